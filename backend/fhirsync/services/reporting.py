"""Read-only queries for dashboards and other subsystems."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fhirsync.models import FhirConnection, ResourceSync, SyncConflict, SyncLog
from fhirsync.services.errors import ConnectionNotFound
from fhirsync.services.store import SyncStore

MAX_PAGE_SIZE = 200


def clamp_limit(limit: int) -> int:
    return max(1, min(limit, MAX_PAGE_SIZE))


@dataclass
class ConnectionStatusReport:
    connection: FhirConnection
    open_conflicts: int
    latest_sync: Optional[SyncLog]


class SyncReporting:
    """Paginated, side-effect-free views over connections, passes and conflicts."""

    def __init__(self, store: SyncStore):
        self.store = store

    async def _connection(self, connection_id: int, tenant_id: Optional[str]) -> FhirConnection:
        connection = await self.store.get_connection(connection_id)
        if connection is None or (tenant_id is not None and connection.tenant_id != tenant_id):
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        return connection

    async def get_connection_status(
        self,
        connection_id: int,
        *,
        tenant_id: Optional[str] = None,
    ) -> ConnectionStatusReport:
        connection = await self._connection(connection_id, tenant_id)
        latest = await self.store.list_sync_logs(connection_id=connection.id, skip=0, limit=1)
        return ConnectionStatusReport(
            connection=connection,
            open_conflicts=await self.store.count_open_conflicts(connection_id=connection.id),
            latest_sync=latest[0] if latest else None,
        )

    async def get_recent_sync_logs(
        self,
        connection_id: int,
        *,
        tenant_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> list[SyncLog]:
        connection = await self._connection(connection_id, tenant_id)
        return await self.store.list_sync_logs(
            connection_id=connection.id,
            skip=max(0, skip),
            limit=clamp_limit(limit),
        )

    async def get_sync_log(
        self,
        sync_log_id: int,
        *,
        tenant_id: Optional[str] = None,
    ) -> Optional[tuple[SyncLog, list[ResourceSync]]]:
        sync_log = await self.store.get_sync_log(sync_log_id)
        if sync_log is None or (tenant_id is not None and sync_log.tenant_id != tenant_id):
            return None
        return sync_log, await self.store.list_resource_syncs(sync_log.id)

    async def get_open_conflicts(
        self,
        *,
        tenant_id: Optional[str] = None,
        connection_id: Optional[int] = None,
        status: Optional[str] = "open",
        skip: int = 0,
        limit: int = 50,
    ) -> list[SyncConflict]:
        if connection_id is not None:
            await self._connection(connection_id, tenant_id)
        return await self.store.list_conflicts(
            tenant_id=tenant_id,
            connection_id=connection_id,
            status=status,
            skip=max(0, skip),
            limit=clamp_limit(limit),
        )
