"""Data models and enums for the wallpaper ingestor."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Mapping


class UploadState(str, Enum):
    """Lifecycle state of an upload record."""

    INITIATED = "initiated"
    UPLOADING = "uploading"
    STORED = "stored"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# States whose rows own a durable blob and take part in per-user dedup.
STORED_STATES: frozenset[UploadState] = frozenset(
    {UploadState.STORED, UploadState.PROCESSING, UploadState.COMPLETED}
)


class FileType(str, Enum):
    """Kind of media held by an upload."""

    IMAGE = "image"
    VIDEO = "video"


@dataclass(slots=True)
class StoredMetadata:
    """File metadata populated once the blob write is confirmed."""

    file_type: FileType
    mime_type: str
    file_size_bytes: int
    width: int
    height: int
    storage_key: str
    storage_bucket: str
    original_filename: str

    @property
    def aspect_ratio(self) -> float:
        return round(self.width / self.height, 4)

    def to_columns(self) -> dict[str, object]:
        """Return a column-name -> value mapping for SQL updates."""
        return {
            "file_type": FileType(self.file_type).value,
            "mime_type": self.mime_type,
            "file_size_bytes": self.file_size_bytes,
            "width": self.width,
            "height": self.height,
            "aspect_ratio": self.aspect_ratio,
            "storage_key": self.storage_key,
            "storage_bucket": self.storage_bucket,
            "original_filename": self.original_filename,
        }


# Column names that must be non-NULL for a row in a stored state.
METADATA_COLUMNS: tuple[str, ...] = (
    "file_type",
    "mime_type",
    "file_size_bytes",
    "width",
    "height",
    "storage_key",
    "storage_bucket",
    "original_filename",
)


@dataclass(slots=True)
class UploadRecord:
    """One row of the ``wallpapers`` table."""

    id: str
    user_id: str
    content_hash: str | None
    upload_state: UploadState
    state_changed_at: str
    upload_attempts: int = 0
    version: int = 0
    processing_error: str | None = None
    file_type: str | None = None
    mime_type: str | None = None
    file_size_bytes: int | None = None
    width: int | None = None
    height: int | None = None
    aspect_ratio: float | None = None
    storage_key: str | None = None
    storage_bucket: str | None = None
    original_filename: str | None = None
    uploaded_at: str | None = None
    claimed_by: str | None = None
    claim_expires_at: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> UploadRecord:
        names = {f.name for f in fields(cls)}
        data = {k: row[k] for k in row.keys() if k in names}
        data["upload_state"] = UploadState(data["upload_state"])
        return cls(**data)

    def missing_metadata(self) -> list[str]:
        """Return the metadata columns that are still NULL."""
        return [name for name in METADATA_COLUMNS if getattr(self, name) is None]

    def metadata(self) -> StoredMetadata:
        """Build :class:`StoredMetadata` from this row.

        Raises:
            ValueError: If any metadata column is NULL.
        """
        missing = self.missing_metadata()
        if missing:
            raise ValueError(f"Record {self.id} is missing {', '.join(missing)}")
        return StoredMetadata(
            file_type=FileType(self.file_type),
            mime_type=self.mime_type,  # type: ignore[arg-type]
            file_size_bytes=self.file_size_bytes,  # type: ignore[arg-type]
            width=self.width,  # type: ignore[arg-type]
            height=self.height,  # type: ignore[arg-type]
            storage_key=self.storage_key,  # type: ignore[arg-type]
            storage_bucket=self.storage_bucket,  # type: ignore[arg-type]
            original_filename=self.original_filename,  # type: ignore[arg-type]
        )


@dataclass(slots=True)
class BlobInfo:
    """Result of a blob ``stat`` call."""

    key: str
    size: int
    content_type: str | None = None
    last_modified: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class PublishAck:
    """Durable acknowledgement returned by an event channel."""

    stream: str
    entry_id: str
    duplicate: bool = False


@dataclass
class ReconciliationConfig:
    """Timing and sizing for the reconciliation engine and scheduler.

    All durations are in seconds so that tests can use sub-second windows.
    ``claim_ttl`` must be longer than ``external_call_timeout`` so a lease
    can never expire while its holder is still inside a bounded call.
    """

    stuck_upload_window: float = 10 * 60
    missing_event_window: float = 5 * 60
    orphaned_intent_window: float = 60 * 60
    max_upload_attempts: int = 3
    reconciliation_interval: float = 5 * 60
    orphan_cleanup_interval: float = 24 * 60 * 60
    orphan_cleanup_batch_size: int = 20
    batch_size: int = 50
    external_call_timeout: float = 10
    claim_ttl: float = 60

    def __post_init__(self) -> None:
        if self.claim_ttl <= self.external_call_timeout:
            raise ValueError(
                f"claim_ttl ({self.claim_ttl}s) must exceed "
                f"external_call_timeout ({self.external_call_timeout}s)"
            )
        if self.max_upload_attempts < 0:
            raise ValueError("max_upload_attempts must be >= 0")
        for name in ("batch_size", "orphan_cleanup_batch_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")


@dataclass
class IngestorConfig:
    """Connection settings for the ingestor's store, bucket and event stream."""

    db_path: str = "data/ingestor.db"
    bucket: str = "wallpapers"
    s3_endpoint_url: str | None = None
    s3_region: str = "us-east-1"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    redis_url: str = "redis://localhost:6379/0"
    event_subject: str = "wallpaper.uploaded"
    stream_maxlen: int = 100_000
    dedup_ttl_seconds: int = 7 * 24 * 60 * 60
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
