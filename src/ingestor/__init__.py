"""Wallpaper ingestor: upload state machine and background reconciliation."""

__version__ = "0.1.0"

from ingestor.models import (
    FileType,
    IngestorConfig,
    ReconciliationConfig,
    StoredMetadata,
    UploadRecord,
    UploadState,
)

__all__ = [
    "FileType",
    "IngestorConfig",
    "ReconciliationConfig",
    "StoredMetadata",
    "UploadRecord",
    "UploadState",
    "__version__",
]
