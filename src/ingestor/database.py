"""SQLite schema and synchronous helpers for the Upload Record Store.

Manages schema initialization, WAL mode pragmas and the read-only
queries the CLI needs.  All state transitions go through the async
:class:`~ingestor.upload.state.UploadRecordStore`.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- One row per upload attempt
CREATE TABLE IF NOT EXISTS wallpapers (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    content_hash TEXT,

    -- State machine
    upload_state TEXT NOT NULL DEFAULT 'initiated'
        CHECK(upload_state IN ('initiated', 'uploading', 'stored',
                               'processing', 'completed', 'failed')),
    state_changed_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    upload_attempts INTEGER NOT NULL DEFAULT 0,
    processing_error TEXT,

    -- File information (NULL until 'stored')
    file_type TEXT CHECK(file_type IS NULL OR file_type IN ('image', 'video')),
    mime_type TEXT,
    file_size_bytes INTEGER,
    original_filename TEXT,
    width INTEGER,
    height INTEGER,
    aspect_ratio REAL,
    storage_key TEXT,
    storage_bucket TEXT,

    -- Reconciliation claim (OCC version + lease)
    version INTEGER NOT NULL DEFAULT 0,
    claimed_by TEXT,
    claim_expires_at TEXT,

    uploaded_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_wallpapers_user_id ON wallpapers(user_id);
CREATE INDEX IF NOT EXISTS idx_wallpapers_upload_state ON wallpapers(upload_state);
CREATE INDEX IF NOT EXISTS idx_wallpapers_state_changed_at
    ON wallpapers(upload_state, state_changed_at, id);

-- Per-user dedup, enforced only once the blob is durable
CREATE UNIQUE INDEX IF NOT EXISTS idx_wallpapers_content_hash
    ON wallpapers(user_id, content_hash)
    WHERE content_hash IS NOT NULL
      AND upload_state IN ('stored', 'processing', 'completed');

-- Auto-update updated_at on any change
CREATE TRIGGER IF NOT EXISTS update_wallpapers_timestamp
    AFTER UPDATE ON wallpapers
    FOR EACH ROW
    BEGIN
        UPDATE wallpapers SET updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now')
        WHERE id = NEW.id;
    END;

-- State transition audit log
CREATE TABLE IF NOT EXISTS _state_log (
    log_id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallpaper_id TEXT NOT NULL,
    old_state TEXT,
    new_state TEXT,
    timestamp TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE TRIGGER IF NOT EXISTS log_upload_state_change
    AFTER UPDATE OF upload_state ON wallpapers
    FOR EACH ROW
    WHEN OLD.upload_state != NEW.upload_state
    BEGIN
        INSERT INTO _state_log(wallpaper_id, old_state, new_state)
        VALUES (NEW.id, OLD.upload_state, NEW.upload_state);
    END;

-- Leases over blob keys for the orphaned-object pass
CREATE TABLE IF NOT EXISTS object_claims (
    storage_key TEXT PRIMARY KEY,
    claimed_by TEXT NOT NULL,
    claim_expires_at TEXT NOT NULL
);
"""


class Database:
    """SQLite database wrapper for schema setup and reporting.

    Usage:
        with Database("data/ingestor.db") as db:
            counts = db.get_state_counts()
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self._setup_pragmas()
        self._setup_schema()

    def _setup_pragmas(self) -> None:
        """Configure SQLite pragmas for concurrent multi-process access."""
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA busy_timeout=5000")

        result = self.conn.execute("PRAGMA journal_mode").fetchone()[0]
        if result != "wal":
            logger.warning("WAL mode not enabled, got: %s", result)

    def _setup_schema(self) -> None:
        """Create tables, indexes, and triggers if they don't exist."""
        self.conn.executescript(SCHEMA_SQL)
        self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    def get_state_counts(self) -> dict[str, int]:
        """Return count of records grouped by upload_state."""
        rows = self.conn.execute(
            "SELECT upload_state, COUNT(*) AS cnt FROM wallpapers GROUP BY upload_state"
        ).fetchall()
        return {row["upload_state"]: row["cnt"] for row in rows}

    def get_state_history(self, wallpaper_id: str) -> list[tuple[str | None, str]]:
        """Return the (old_state, new_state) transitions logged for a record."""
        rows = self.conn.execute(
            """SELECT old_state, new_state FROM _state_log
               WHERE wallpaper_id = ? ORDER BY log_id""",
            (wallpaper_id,),
        ).fetchall()
        return [(row["old_state"], row["new_state"]) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()
