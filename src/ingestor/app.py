"""Composition root: wires the store, blob store and event channel together."""

from __future__ import annotations

import logging
import os
import socket
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass

from ingestor.blobstore import S3BlobStore
from ingestor.database import Database
from ingestor.events import RedisStreamEventChannel
from ingestor.models import IngestorConfig
from ingestor.reconciliation.engine import ReconciliationEngine
from ingestor.reconciliation.scheduler import ReconciliationScheduler
from ingestor.upload.intake import IntakeService
from ingestor.upload.state import UploadRecordStore

logger = logging.getLogger(__name__)


def default_instance_id() -> str:
    """Host, pid and a random suffix: unique per process lifetime."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class Services:
    config: IngestorConfig
    store: UploadRecordStore
    blobs: S3BlobStore
    events: RedisStreamEventChannel
    engine: ReconciliationEngine
    scheduler: ReconciliationScheduler
    intake: IntakeService

    async def check_health(self) -> dict[str, bool]:
        return {
            "database": await self.store.check_health(),
            "blob_store": await self.blobs.check_health(self.config.bucket),
            "event_channel": await self.events.check_health(),
        }


class IngestorApp:
    """Async context manager that builds and tears down :class:`Services`.

    Usage::

        async with IngestorApp(load_config()) as services:
            await services.scheduler.trigger_now()
    """

    def __init__(self, config: IngestorConfig, instance_id: str | None = None) -> None:
        self.config = config
        self.instance_id = instance_id or default_instance_id()
        self._stack: AsyncExitStack | None = None
        self._services: Services | None = None

    async def __aenter__(self) -> Services:
        config = self.config
        # Schema bootstrap is idempotent.
        Database(config.db_path).close()

        stack = AsyncExitStack()
        try:
            store = await stack.enter_async_context(UploadRecordStore(config.db_path))
            blobs = await stack.enter_async_context(
                S3BlobStore(
                    endpoint_url=config.s3_endpoint_url,
                    region_name=config.s3_region,
                    access_key_id=config.s3_access_key_id,
                    secret_access_key=config.s3_secret_access_key,
                )
            )
            events = await stack.enter_async_context(
                RedisStreamEventChannel(
                    config.redis_url,
                    stream_maxlen=config.stream_maxlen,
                    dedup_ttl_seconds=config.dedup_ttl_seconds,
                )
            )
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack

        engine = ReconciliationEngine(
            store,
            blobs,
            events,
            config.reconciliation,
            self.instance_id,
            bucket=config.bucket,
            subject=config.event_subject,
        )
        logger.debug("Ingestor services ready (instance %s)", self.instance_id)
        self._services = Services(
            config=config,
            store=store,
            blobs=blobs,
            events=events,
            engine=engine,
            scheduler=ReconciliationScheduler(engine),
            intake=IntakeService(store, blobs, events, config.bucket, config.event_subject),
        )
        return self._services

    async def __aexit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        if self._services is not None:
            await self._services.scheduler.stop()
            self._services = None
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None
