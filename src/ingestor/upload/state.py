"""Async SQLite store for upload records.

Wraps aiosqlite to provide the Upload Record Store: intent creation with
per-user dedup, FSM-validated state transitions, and the claim/lease
primitives the reconciliation passes use to stay safe across instances.

Each write commits immediately -- no transaction is held across an
``await`` on an external system.  Every transition is an OCC update
guarded by ``(id, upload_state, version)``; a claim bumps ``version`` so
that a competing instance's guard no longer matches.
"""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone

import aiosqlite

from ingestor.models import STORED_STATES, StoredMetadata, UploadRecord, UploadState
from ingestor.upload.exceptions import OCCConflictError
from ingestor.upload.fsm import check_transition

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

# Columns a transition may write in addition to the state bookkeeping.
_TRANSITION_COLUMNS = frozenset(
    {
        "processing_error",
        "file_type",
        "mime_type",
        "file_size_bytes",
        "width",
        "height",
        "aspect_ratio",
        "storage_key",
        "storage_bucket",
        "original_filename",
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    """Format an aware datetime as the store's sortable UTC string."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(_TS_FORMAT)


def parse_ts(value: str) -> datetime:
    """Parse a store timestamp back into an aware UTC datetime."""
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def new_record_id() -> str:
    return f"wlpr_{uuid.uuid4().hex}"


class UploadRecordStore:
    """Async SQLite store for upload records and reconciliation leases.

    Usage::

        async with UploadRecordStore("data/ingestor.db") as store:
            record_id, duplicate = await store.create_intent("user_1", digest)
            await store.mark_uploading(record_id)

    Args:
        db_path: Path to a database initialised by :class:`ingestor.database.Database`.
        clock: Returns the current aware UTC time.  Injected so tests and
            multiple logical instances never share a hidden time source.
        busy_timeout: Seconds SQLite waits on a locked database before failing.
    """

    def __init__(
        self,
        db_path: str,
        clock: Callable[[], datetime] = _utcnow,
        busy_timeout: float = 5.0,
    ) -> None:
        self.db_path = db_path
        self._clock = clock
        self._busy_timeout = busy_timeout
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open an aiosqlite connection with WAL mode and a busy timeout."""
        self._db = await aiosqlite.connect(self.db_path, timeout=self._busy_timeout)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute(f"PRAGMA busy_timeout={int(self._busy_timeout * 1000)}")

    async def close(self) -> None:
        """Close the connection if open."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> UploadRecordStore:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    async def check_health(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            db = self._ensure_connected()
            cursor = await db.execute("SELECT 1")
            row = await cursor.fetchone()
        except (RuntimeError, sqlite3.Error) as exc:
            logger.warning("Record store health check failed: %s", exc)
            return False
        return row is not None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Not connected -- use 'async with' or call connect()")
        return self._db

    def now(self) -> datetime:
        return self._clock()

    def _now_iso(self) -> str:
        return format_ts(self._clock())

    def _iso_ago(self, seconds: float) -> str:
        return format_ts(self._clock() - timedelta(seconds=seconds))

    def _iso_ahead(self, seconds: float) -> str:
        return format_ts(self._clock() + timedelta(seconds=seconds))

    # ------------------------------------------------------------------
    # Intake path
    # ------------------------------------------------------------------

    async def find_duplicate(self, user_id: str, content_hash: str) -> UploadRecord | None:
        """Return the stored record for ``(user_id, content_hash)``, if any."""
        db = self._ensure_connected()
        placeholders = ", ".join("?" for _ in STORED_STATES)
        cursor = await db.execute(
            f"""SELECT * FROM wallpapers
                WHERE user_id = ? AND content_hash = ?
                  AND upload_state IN ({placeholders})
                LIMIT 1""",
            (user_id, content_hash, *sorted(s.value for s in STORED_STATES)),
        )
        row = await cursor.fetchone()
        return UploadRecord.from_row(row) if row is not None else None

    async def create_intent(self, user_id: str, content_hash: str) -> tuple[str, bool]:
        """Record an upload intent, or resolve to the existing duplicate.

        Returns:
            ``(record_id, is_duplicate)``.  When the user already has a
            stored upload with the same content hash, its id is returned
            and no row is created.
        """
        existing = await self.find_duplicate(user_id, content_hash)
        if existing is not None:
            logger.debug(
                "Duplicate upload for user %s resolved to %s", user_id, existing.id
            )
            return existing.id, True

        db = self._ensure_connected()
        record_id = new_record_id()
        now = self._now_iso()
        await db.execute(
            """INSERT INTO wallpapers
                   (id, user_id, content_hash, upload_state, state_changed_at,
                    upload_attempts, uploaded_at)
               VALUES (?, ?, ?, 'initiated', ?, 0, ?)""",
            (record_id, user_id, content_hash, now, now),
        )
        await db.commit()
        logger.debug("Recorded upload intent %s for user %s", record_id, user_id)
        return record_id, False

    # ------------------------------------------------------------------
    # Read queries
    # ------------------------------------------------------------------

    async def get(self, record_id: str) -> UploadRecord | None:
        db = self._ensure_connected()
        cursor = await db.execute("SELECT * FROM wallpapers WHERE id = ?", (record_id,))
        row = await cursor.fetchone()
        return UploadRecord.from_row(row) if row is not None else None

    async def require(self, record_id: str) -> UploadRecord:
        """Return the record or raise ``ValueError`` if it does not exist."""
        record = await self.get(record_id)
        if record is None:
            raise ValueError(f"Upload record not found: {record_id}")
        return record

    async def find_by_storage_prefix(self, storage_key: str) -> UploadRecord | None:
        """Return the record owning a blob key of the form ``<id>/...``."""
        record_id = storage_key.split("/", 1)[0]
        if not record_id:
            return None
        return await self.get(record_id)

    async def count_by_state(self) -> dict[str, int]:
        db = self._ensure_connected()
        cursor = await db.execute(
            "SELECT upload_state, COUNT(*) AS cnt FROM wallpapers GROUP BY upload_state"
        )
        rows = await cursor.fetchall()
        return {row["upload_state"]: row["cnt"] for row in rows}

    async def select_candidates(
        self,
        state: UploadState,
        older_than: float,
        limit: int,
        after: tuple[str, str] | None = None,
    ) -> list[UploadRecord]:
        """Return unclaimed rows in *state* whose last transition is older than *older_than* seconds.

        Rows are ordered by ``(state_changed_at, id)``.  Pass the key of
        the last row of the previous page as *after* to continue a scan.
        """
        db = self._ensure_connected()
        now = self._now_iso()
        params: list[object] = [UploadState(state).value, self._iso_ago(older_than), now]
        keyset = ""
        if after is not None:
            keyset = "AND (state_changed_at > ? OR (state_changed_at = ? AND id > ?))"
            params.extend([after[0], after[0], after[1]])
        params.append(limit)
        cursor = await db.execute(
            f"""SELECT * FROM wallpapers
                WHERE upload_state = ?
                  AND state_changed_at < ?
                  AND (claim_expires_at IS NULL OR claim_expires_at < ?)
                  {keyset}
                ORDER BY state_changed_at, id
                LIMIT ?""",
            params,
        )
        rows = await cursor.fetchall()
        return [UploadRecord.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Claims (reconciliation leases)
    # ------------------------------------------------------------------

    async def claim(
        self, record: UploadRecord, instance_id: str, ttl: float
    ) -> UploadRecord | None:
        """Atomically take a lease on *record* for *ttl* seconds.

        The UPDATE only matches when the row is still at the version and
        state we read and no other lease is live, so at most one instance
        wins.

        Returns:
            The claimed record (with its new version), or ``None`` if
            another instance got there first.
        """
        db = self._ensure_connected()
        now = self._now_iso()
        expires = self._iso_ahead(ttl)
        cursor = await db.execute(
            """UPDATE wallpapers
               SET claimed_by = ?, claim_expires_at = ?, version = version + 1
               WHERE id = ?
                 AND version = ?
                 AND upload_state = ?
                 AND (claim_expires_at IS NULL OR claim_expires_at < ?)""",
            (instance_id, expires, record.id, record.version, record.upload_state.value, now),
        )
        await db.commit()
        if cursor.rowcount == 0:
            logger.debug("Claim on %s lost (expected v%d)", record.id, record.version)
            return None
        return dataclasses.replace(
            record,
            version=record.version + 1,
            claimed_by=instance_id,
            claim_expires_at=expires,
        )

    async def release(self, record: UploadRecord) -> bool:
        """Drop a lease without changing state.  Returns False if it was already lost."""
        db = self._ensure_connected()
        cursor = await db.execute(
            """UPDATE wallpapers
               SET claimed_by = NULL, claim_expires_at = NULL
               WHERE id = ? AND claimed_by = ? AND version = ?""",
            (record.id, record.claimed_by, record.version),
        )
        await db.commit()
        return cursor.rowcount > 0

    async def claim_object(self, storage_key: str, instance_id: str, ttl: float) -> bool:
        """Take a lease on a blob key.  Returns True if this instance holds it."""
        db = self._ensure_connected()
        now = self._now_iso()
        cursor = await db.execute(
            """INSERT INTO object_claims (storage_key, claimed_by, claim_expires_at)
               VALUES (?, ?, ?)
               ON CONFLICT(storage_key) DO UPDATE
                   SET claimed_by = excluded.claimed_by,
                       claim_expires_at = excluded.claim_expires_at
                   WHERE object_claims.claim_expires_at < ?""",
            (storage_key, instance_id, self._iso_ahead(ttl), now),
        )
        await db.commit()
        return cursor.rowcount > 0

    async def release_object(self, storage_key: str, instance_id: str) -> None:
        db = self._ensure_connected()
        await db.execute(
            "DELETE FROM object_claims WHERE storage_key = ? AND claimed_by = ?",
            (storage_key, instance_id),
        )
        await db.commit()

    # ------------------------------------------------------------------
    # FSM-mediated transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        record: UploadRecord,
        event: str,
        *,
        fields: Mapping[str, object] | None = None,
        increment_attempts: bool = False,
    ) -> UploadRecord:
        """Apply lifecycle *event* to *record* with an OCC guard.

        The guard is ``(id, upload_state, version)`` plus ``claimed_by``
        when the record carries a claim.  A successful transition sets
        ``state_changed_at``, bumps ``version`` and clears any claim.

        Raises:
            InvalidTransitionError: If the FSM rejects *event*.
            OCCConflictError: If the row changed since *record* was read.
        """
        target = check_transition(record.upload_state, event)
        extra = dict(fields or {})
        unknown = set(extra) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Columns not writable by a transition: {sorted(unknown)}")

        now = self._now_iso()
        new_version = record.version + 1
        assignments = [
            "upload_state = ?",
            "state_changed_at = ?",
            "version = ?",
            "claimed_by = NULL",
            "claim_expires_at = NULL",
        ]
        params: list[object] = [target.value, now, new_version]
        for column, value in extra.items():
            assignments.append(f"{column} = ?")
            params.append(value)
        if increment_attempts:
            assignments.append("upload_attempts = upload_attempts + 1")

        where = "id = ? AND upload_state = ? AND version = ?"
        params.extend([record.id, record.upload_state.value, record.version])
        if record.claimed_by is not None:
            where += " AND claimed_by = ?"
            params.append(record.claimed_by)

        db = self._ensure_connected()
        try:
            cursor = await db.execute(
                f"UPDATE wallpapers SET {', '.join(assignments)} WHERE {where}", params
            )
        except sqlite3.IntegrityError:
            await db.rollback()
            raise
        await db.commit()
        if cursor.rowcount == 0:
            raise OCCConflictError(
                f"Version conflict on {record.id}: expected "
                f"{record.upload_state.value} v{record.version}"
            )
        logger.debug(
            "Transitioned %s %s -> %s (v%d->v%d)",
            record.id, record.upload_state.value, target.value, record.version, new_version,
        )
        return dataclasses.replace(
            record,
            upload_state=target,
            state_changed_at=now,
            version=new_version,
            claimed_by=None,
            claim_expires_at=None,
            upload_attempts=record.upload_attempts + (1 if increment_attempts else 0),
            **extra,
        )

    async def mark_uploading(self, record_id: str) -> UploadRecord:
        return await self.transition(await self.require(record_id), "start_upload")

    async def mark_stored(
        self, record: UploadRecord | str, metadata: StoredMetadata
    ) -> UploadRecord:
        """Move an ``uploading`` record to ``stored`` with its file metadata.

        Raises:
            sqlite3.IntegrityError: If another record of the same user and
                content hash is already stored (dedup index).
        """
        if isinstance(record, str):
            record = await self.require(record)
        return await self.transition(record, "confirm_stored", fields=metadata.to_columns())

    async def mark_processing(self, record: UploadRecord | str) -> UploadRecord:
        if isinstance(record, str):
            record = await self.require(record)
        return await self.transition(record, "publish")

    async def mark_completed(self, record_id: str) -> UploadRecord:
        return await self.transition(await self.require(record_id), "complete")

    async def mark_failed(self, record: UploadRecord | str, error_message: str) -> UploadRecord:
        if isinstance(record, str):
            record = await self.require(record)
        return await self.transition(
            record, "fail", fields={"processing_error": error_message}
        )

    async def record_retry(self, record: UploadRecord) -> UploadRecord:
        """Count one more recovery attempt and restart the stuck-upload window."""
        return await self.transition(record, "retry_upload", increment_attempts=True)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_orphaned_intent(self, record: UploadRecord, older_than: float) -> bool:
        """Delete an ``initiated`` row that is still unchanged and past *older_than* seconds.

        Returns:
            True if this call deleted the row.
        """
        db = self._ensure_connected()
        now = self._now_iso()
        cursor = await db.execute(
            """DELETE FROM wallpapers
               WHERE id = ?
                 AND upload_state = 'initiated'
                 AND version = ?
                 AND state_changed_at < ?
                 AND (claim_expires_at IS NULL OR claim_expires_at < ?)""",
            (record.id, record.version, self._iso_ago(older_than), now),
        )
        await db.commit()
        return cursor.rowcount > 0
