"""Shared pytest fixtures for wallpaper ingestor tests.

Provides a controllable clock, a temporary database, a connected record
store, in-memory blob store and event channel doubles, and helpers that
put rows into a given lifecycle state.
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ingestor.blobstore import metadata_to_blob, original_key
from ingestor.database import Database
from ingestor.models import (
    BlobInfo,
    FileType,
    PublishAck,
    ReconciliationConfig,
    StoredMetadata,
    UploadRecord,
)
from ingestor.reconciliation.engine import ReconciliationEngine
from ingestor.upload.exceptions import TransientBackendError
from ingestor.upload.state import UploadRecordStore

BUCKET = "wallpapers"
SUBJECT = "wallpaper.uploaded"

_digests = itertools.count(1)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, *, minutes: float = 0) -> None:
        self.now += timedelta(seconds=seconds, minutes=minutes)


class FakeBlobStore:
    """In-memory :class:`~ingestor.blobstore.BlobStore` that counts calls."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], tuple[bytes, str, dict[str, str]]] = {}
        self.puts = 0
        self.deletes: list[str] = []
        self.fail_puts = False
        self.fail_lists = False

    async def put(self, bucket, key, body, content_type, metadata=None):
        if self.fail_puts:
            raise TransientBackendError("S3 put_object failed: unavailable")
        self.puts += 1
        self.objects[(bucket, key)] = (body, content_type, dict(metadata or {}))

    async def exists(self, bucket, key):
        return (bucket, key) in self.objects

    async def stat(self, bucket, key):
        if (bucket, key) not in self.objects:
            return None
        body, content_type, metadata = self.objects[(bucket, key)]
        return BlobInfo(key=key, size=len(body), content_type=content_type, metadata=dict(metadata))

    async def delete(self, bucket, key):
        self.deletes.append(key)
        self.objects.pop((bucket, key), None)

    async def list_keys(self, bucket, prefix=None) -> AsyncGenerator[str, None]:
        if self.fail_lists:
            raise TransientBackendError("S3 list_objects_v2 failed: unavailable")
        for b, key in sorted(self.objects):
            if b == bucket and (prefix is None or key.startswith(prefix)):
                yield key

    async def check_health(self, bucket):
        return True


class FakeEventChannel:
    """In-memory :class:`~ingestor.events.EventChannel` with dedup and failure injection."""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []
        self.calls = 0
        self.fail = False
        self._seen: dict[str, str] = {}

    async def publish(self, subject, payload, *, dedup_key):
        self.calls += 1
        if self.fail:
            raise TransientBackendError("Redis publish failed: unavailable")
        if dedup_key in self._seen:
            return PublishAck(stream=subject, entry_id=self._seen[dedup_key], duplicate=True)
        entry_id = f"{len(self.published) + 1}-0"
        self._seen[dedup_key] = entry_id
        self.published.append((subject, payload))
        return PublishAck(stream=subject, entry_id=entry_id)

    async def check_health(self):
        return True


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Create a temporary database with the full schema and return its path."""
    path = tmp_path / "ingestor.db"
    Database(path).close()
    return str(path)


@pytest.fixture
def tmp_db(db_path: str):
    db = Database(db_path)
    yield db
    db.close()


@pytest.fixture
async def store(db_path: str, clock: FakeClock):
    async with UploadRecordStore(db_path, clock=clock) as s:
        yield s


@pytest.fixture
def blobs() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def events() -> FakeEventChannel:
    return FakeEventChannel()


@pytest.fixture
def recon_config() -> ReconciliationConfig:
    return ReconciliationConfig(batch_size=2, orphan_cleanup_batch_size=2)


@pytest.fixture
def engine(store, blobs, events, recon_config) -> ReconciliationEngine:
    return ReconciliationEngine(
        store, blobs, events, recon_config, "instance-a", bucket=BUCKET, subject=SUBJECT
    )


# ----------------------------------------------------------------------
# Row helpers
# ----------------------------------------------------------------------


def metadata_for(record_id: str, *, width: int = 1920, height: int = 1080) -> StoredMetadata:
    return StoredMetadata(
        file_type=FileType.IMAGE,
        mime_type="image/jpeg",
        file_size_bytes=2048,
        width=width,
        height=height,
        storage_key=original_key(record_id, "jpg"),
        storage_bucket=BUCKET,
        original_filename="mountains.jpg",
    )


def put_original(blobs: FakeBlobStore, record_id: str, *, with_metadata: bool = True) -> str:
    """Place an original blob for *record_id* the way the intake path writes it."""
    key = original_key(record_id, "jpg")
    metadata = (
        metadata_to_blob(FileType.IMAGE, 1920, 1080, "mountains.jpg") if with_metadata else {}
    )
    blobs.objects[(BUCKET, key)] = (b"\xff\xd8" + b"x" * 2046, "image/jpeg", metadata)
    return key


async def make_initiated(
    store: UploadRecordStore, user_id: str = "user_1", digest: str | None = None
) -> UploadRecord:
    record_id, _ = await store.create_intent(user_id, digest or f"sha256-{next(_digests)}")
    return await store.require(record_id)


async def make_uploading(store: UploadRecordStore, **kwargs) -> UploadRecord:
    record = await make_initiated(store, **kwargs)
    return await store.mark_uploading(record.id)


async def make_stored(store: UploadRecordStore, **kwargs) -> UploadRecord:
    record = await make_uploading(store, **kwargs)
    return await store.mark_stored(record, metadata_for(record.id))
