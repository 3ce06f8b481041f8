"""Completion events and the Redis Streams event channel.

``wallpaper.uploaded`` is published once a blob is durable and its row
is ``stored``.  Publishing is at-least-once; consumers and the channel
deduplicate on ``eventId``, which is derived deterministically from the
record id so that a republish after a crash carries the same id.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any, Literal, Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ingestor.models import PublishAck, UploadRecord
from ingestor.upload.exceptions import IncompleteRecordError, TransientBackendError
from ingestor.upload.state import parse_ts

logger = logging.getLogger(__name__)

WALLPAPER_UPLOADED_SUBJECT = "wallpaper.uploaded"

_EVENT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "urn:wallpaper-ingestor:events")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class UploadedWallpaper(_CamelModel):
    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    file_type: Literal["image", "video"]
    mime_type: str = Field(min_length=1)
    file_size_bytes: int = Field(gt=0)
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    aspect_ratio: float = Field(gt=0)
    storage_key: str = Field(min_length=1)
    storage_bucket: str = Field(min_length=1)
    original_filename: str = Field(min_length=1)
    uploaded_at: datetime


class WallpaperUploadedEvent(_CamelModel):
    """Payload published on ``wallpaper.uploaded``."""

    event_id: str = Field(min_length=1)
    event_type: Literal["wallpaper.uploaded"] = WALLPAPER_UPLOADED_SUBJECT
    timestamp: datetime
    wallpaper: UploadedWallpaper

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def event_id_for(record_id: str, event_type: str = WALLPAPER_UPLOADED_SUBJECT) -> str:
    """Deterministic event id: the same record always yields the same id."""
    return str(uuid.uuid5(_EVENT_NAMESPACE, f"{event_type}:{record_id}"))


def build_uploaded_event(record: UploadRecord, now: datetime) -> WallpaperUploadedEvent:
    """Build the completion event for a stored record.

    Raises:
        IncompleteRecordError: If the row lacks metadata the event needs
            or carries values the schema rejects.
    """
    missing = record.missing_metadata()
    if missing:
        raise IncompleteRecordError(record.id, missing)
    try:
        return WallpaperUploadedEvent(
            event_id=event_id_for(record.id),
            timestamp=now,
            wallpaper=UploadedWallpaper(
                id=record.id,
                user_id=record.user_id,
                file_type=record.file_type,
                mime_type=record.mime_type,
                file_size_bytes=record.file_size_bytes,
                width=record.width,
                height=record.height,
                aspect_ratio=record.aspect_ratio,
                storage_key=record.storage_key,
                storage_bucket=record.storage_bucket,
                original_filename=record.original_filename,
                uploaded_at=parse_ts(record.uploaded_at) if record.uploaded_at else now,
            ),
        )
    except ValidationError as exc:
        fields = [".".join(str(part) for part in err["loc"]) for err in exc.errors()]
        raise IncompleteRecordError(record.id, fields) from exc


class EventChannel(Protocol):
    """Durable, acknowledged publish of completion events."""

    async def publish(
        self, subject: str, payload: dict[str, Any], *, dedup_key: str
    ) -> PublishAck: ...

    async def check_health(self) -> bool: ...


# KEYS[1] dedup marker, KEYS[2] stream
# ARGV[1] marker TTL, ARGV[2] stream MAXLEN, ARGV[3] payload, ARGV[4] dedup key
_PUBLISH_SCRIPT = """
local existing = redis.call('GET', KEYS[1])
if existing then
    return {0, existing}
end
local id = redis.call('XADD', KEYS[2], 'MAXLEN', '~', ARGV[2], '*',
                      'event', ARGV[3], 'dedup_key', ARGV[4])
redis.call('SET', KEYS[1], id, 'EX', ARGV[1])
return {1, id}
"""


class RedisStreamEventChannel:
    """:class:`EventChannel` backed by Redis Streams.

    Each subject is a stream of the same name.  The append and its dedup
    marker are written by one Lua script, so a retried publish with the
    same ``dedup_key`` returns the original entry id instead of adding a
    second entry.
    """

    def __init__(
        self,
        redis_url: str,
        stream_maxlen: int = 100_000,
        dedup_ttl_seconds: int = 7 * 24 * 60 * 60,
        max_attempts: int = 3,
        client_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._stream_maxlen = stream_maxlen
        self._dedup_ttl_seconds = dedup_ttl_seconds
        self._max_attempts = max_attempts
        self._client_factory = client_factory or self._default_client
        self._redis: Any = None
        self._script: Any = None

    @staticmethod
    def _default_client(url: str) -> Any:
        return aioredis.from_url(
            url,
            socket_keepalive=True,
            retry_on_timeout=True,
            socket_connect_timeout=5,
            socket_timeout=10,
            decode_responses=True,
        )

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = self._client_factory(self._redis_url)
            self._script = self._redis.register_script(_PUBLISH_SCRIPT)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._script = None

    async def __aenter__(self) -> RedisStreamEventChannel:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        await self.close()

    async def publish(
        self, subject: str, payload: dict[str, Any], *, dedup_key: str
    ) -> PublishAck:
        """Append *payload* to the *subject* stream and return its entry id.

        Raises:
            TransientBackendError: If Redis stays unreachable after retries.
        """
        await self.connect()
        keys = [f"{subject}:dedup:{dedup_key}", subject]
        args = [self._dedup_ttl_seconds, self._stream_maxlen, json.dumps(payload), dedup_key]
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
                retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
                reraise=True,
            ):
                with attempt:
                    created, entry_id = await self._script(keys=keys, args=args)
        except RedisError as exc:
            logger.error("Publish to %s failed for %s: %s", subject, dedup_key, exc)
            raise TransientBackendError(f"Redis publish to {subject} failed: {exc}") from exc

        ack = PublishAck(stream=subject, entry_id=str(entry_id), duplicate=not int(created))
        if ack.duplicate:
            logger.info("Event %s already on %s as %s", dedup_key, subject, ack.entry_id)
        else:
            logger.debug("Published %s to %s as %s", dedup_key, subject, ack.entry_id)
        return ack

    async def check_health(self) -> bool:
        try:
            await self.connect()
            return bool(await self._redis.ping())
        except RedisError as exc:
            logger.warning("Event channel health check failed: %s", exc)
            return False
