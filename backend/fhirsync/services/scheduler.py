"""Background scheduler that starts passes for connections that are due."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fhirsync.config import settings
from fhirsync.database import get_db_context
from fhirsync.models import ConnectionStatus, FhirConnection, SyncFrequency, SyncStatus, SyncType, utcnow
from fhirsync.services.connections import ClientFactory, default_client_factory
from fhirsync.services.engine import build_engine
from fhirsync.services.orchestrator import SyncRequest
from fhirsync.services.store import SQLSyncStore, SyncStore

logger = logging.getLogger("fhirsync.scheduler")

FREQUENCY_INTERVALS: dict[str, Optional[timedelta]] = {
    SyncFrequency.realtime.value: timedelta(minutes=5),
    SyncFrequency.hourly.value: timedelta(hours=1),
    SyncFrequency.daily.value: timedelta(days=1),
    SyncFrequency.manual.value: None,
}

StoreContext = Callable[[], AbstractAsyncContextManager[SyncStore]]


@asynccontextmanager
async def sql_store_context() -> AsyncIterator[SyncStore]:
    async with get_db_context() as db:
        yield SQLSyncStore(db)


def is_due(connection: FhirConnection, last_started_at: Optional[datetime], now: datetime) -> bool:
    """Only active connections with a non-manual cadence are ever due."""
    if connection.status != ConnectionStatus.active.value:
        return False
    interval = FREQUENCY_INTERVALS.get(connection.sync_frequency)
    if interval is None:
        return False
    return last_started_at is None or last_started_at + interval <= now


@dataclass
class SchedulerRunStats:
    """Telemetry emitted for one scheduler cycle."""

    scanned_connections: int = 0
    due_connections: int = 0
    succeeded: int = 0
    partial: int = 0
    failed: int = 0
    skipped: int = 0
    errored: int = 0


class SyncScheduler:
    """Polling scheduler: one worker per due connection, bounded in parallel."""

    def __init__(
        self,
        *,
        store_context: StoreContext = sql_store_context,
        client_factory: ClientFactory = default_client_factory,
    ) -> None:
        self.store_context = store_context
        self.client_factory = client_factory
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start background scheduler loop if enabled."""
        if not settings.scheduler_enabled:
            logger.info("Sync scheduler disabled by configuration")
            return
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="fhir-sync-scheduler")
        logger.info(
            "Sync scheduler started (poll=%ss batch=%s parallel=%s)",
            settings.scheduler_poll_interval_seconds,
            settings.scheduler_batch_size,
            settings.scheduler_max_parallel,
        )

    async def stop(self) -> None:
        """Stop background scheduler loop."""
        self._stop_event.set()
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Sync scheduler task was cancelled")
        finally:
            self._task = None
        logger.info("Sync scheduler stopped")

    async def due_connections(self, now: datetime) -> tuple[int, list[FhirConnection]]:
        async with self.store_context() as store:
            active = await store.list_connections(
                statuses=[ConnectionStatus.active.value],
                limit=10_000,
            )
            due: list[FhirConnection] = []
            for connection in active:
                latest = await store.list_sync_logs(connection_id=connection.id, limit=1)
                if is_due(connection, latest[0].started_at if latest else None, now):
                    due.append(connection)
                if len(due) >= settings.scheduler_batch_size:
                    break
        return len(active), due

    async def run_once(self, now: Optional[datetime] = None) -> SchedulerRunStats:
        """Run one scheduler cycle (used by background loop and tests)."""
        now = now or utcnow()
        stats = SchedulerRunStats()
        stats.scanned_connections, due = await self.due_connections(now)
        stats.due_connections = len(due)
        if not due:
            return stats

        semaphore = asyncio.Semaphore(max(1, settings.scheduler_max_parallel))
        results = await asyncio.gather(
            *(self._sync_connection(connection, semaphore) for connection in due),
            return_exceptions=True,
        )
        for connection, result in zip(due, results):
            if isinstance(result, BaseException):
                stats.errored += 1
                logger.error(
                    "Scheduled sync for connection=%s raised %s",
                    connection.id,
                    result.__class__.__name__,
                    exc_info=result,
                )
            elif result is None:
                stats.skipped += 1
            elif result == SyncStatus.success.value:
                stats.succeeded += 1
            elif result == SyncStatus.partial.value:
                stats.partial += 1
            else:
                stats.failed += 1
        return stats

    async def _sync_connection(
        self,
        connection: FhirConnection,
        semaphore: asyncio.Semaphore,
    ) -> Optional[str]:
        sync_type = (
            SyncType.incremental.value if connection.last_sync_at is not None else SyncType.full.value
        )
        async with semaphore:
            # Each worker owns its session; passes never share a transaction.
            async with self.store_context() as store:
                engine = build_engine(store, client_factory=self.client_factory)
                sync_log = await engine.orchestrator.run(
                    SyncRequest(connection_id=connection.id, sync_type=sync_type)
                )
                return sync_log.status if sync_log is not None else None

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            started_at = asyncio.get_running_loop().time()
            try:
                stats = await self.run_once()
                if stats.due_connections:
                    logger.info(
                        "Sync cycle: scanned=%s due=%s succeeded=%s partial=%s failed=%s skipped=%s errored=%s",
                        stats.scanned_connections,
                        stats.due_connections,
                        stats.succeeded,
                        stats.partial,
                        stats.failed,
                        stats.skipped,
                        stats.errored,
                    )
            except Exception:
                logger.exception("Sync scheduler cycle failed")

            elapsed = asyncio.get_running_loop().time() - started_at
            sleep_seconds = max(1, settings.scheduler_poll_interval_seconds - int(elapsed))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_seconds)
            except TimeoutError:
                continue


_scheduler_instance: SyncScheduler | None = None


def get_sync_scheduler() -> SyncScheduler:
    """Get singleton sync scheduler instance."""
    global _scheduler_instance
    if _scheduler_instance is None:
        _scheduler_instance = SyncScheduler()
    return _scheduler_instance
