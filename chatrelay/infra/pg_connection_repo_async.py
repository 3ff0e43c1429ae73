# chatrelay/infra/pg_connection_repo_async.py
from __future__ import annotations
from typing import Optional

from chatrelay.core.domain import ConnectionRecord, ConnectionRecordStatus
from chatrelay.core.ports import AsyncConnectionRepository
from chatrelay.infra.db_resilience_async import safe_db_conn
from chatrelay.infra.logging_config import get_logger
from chatrelay.infra.metrics import AppMetrics

logger = get_logger(__name__)

_COLUMNS = """
    tenant_id, agent_id, status, phone_number, platform, display_name,
    qr_generated, disconnect_reason, created_by,
    connected_at, disconnected_at, created_at, updated_at
"""


def _row_to_record(row) -> ConnectionRecord:
    return ConnectionRecord(
        tenant_id=row['tenant_id'],
        agent_id=row['agent_id'],
        status=row['status'],
        phone_number=row['phone_number'],
        platform=row['platform'],
        display_name=row['display_name'],
        qr_generated=row['qr_generated'],
        disconnect_reason=row['disconnect_reason'],
        created_by=row['created_by'],
        connected_at=row['connected_at'],
        disconnected_at=row['disconnected_at'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


class AsyncPostgresConnectionRepository(AsyncConnectionRepository):
    """Channel connection records, one row per (tenant, agent)."""

    async def get(self, tenant_id: str, agent_id: str) -> Optional[ConnectionRecord]:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM channel_connections WHERE tenant_id=$1 AND agent_id=$2",
                    tenant_id, agent_id
                )
                return _row_to_record(row) if row else None
        except Exception:
            logger.error(f"Failed to get connection record: tenant={tenant_id}, agent={agent_id}", exc_info=True)
            AppMetrics.database_error("connection_get")
            raise

    async def upsert(self, record: ConnectionRecord) -> None:
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    INSERT INTO channel_connections(
                      tenant_id, agent_id, status, phone_number, platform, display_name,
                      qr_generated, created_by, connected_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    ON CONFLICT (tenant_id, agent_id)
                    DO UPDATE SET
                      status = EXCLUDED.status,
                      phone_number = EXCLUDED.phone_number,
                      platform = EXCLUDED.platform,
                      display_name = EXCLUDED.display_name,
                      qr_generated = EXCLUDED.qr_generated,
                      created_by = COALESCE(EXCLUDED.created_by, channel_connections.created_by),
                      connected_at = COALESCE(EXCLUDED.connected_at, channel_connections.connected_at),
                      disconnect_reason = NULL,
                      updated_at = now()
                    """,
                    record.tenant_id, record.agent_id, record.status,
                    record.phone_number, record.platform, record.display_name,
                    record.qr_generated, record.created_by, record.connected_at,
                )
        except Exception:
            logger.error(
                f"Failed to upsert connection record: tenant={record.tenant_id}, agent={record.agent_id}",
                exc_info=True
            )
            AppMetrics.database_error("connection_upsert")
            raise

    async def update_status(
        self, tenant_id: str, agent_id: str, status: str, *, reason: str | None = None
    ) -> None:
        connected = status == ConnectionRecordStatus.CONNECTED.value
        disconnected = status == ConnectionRecordStatus.DISCONNECTED.value
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    UPDATE channel_connections SET
                      status = $3,
                      disconnect_reason = CASE WHEN $5 THEN $4 ELSE disconnect_reason END,
                      connected_at = CASE WHEN $6 THEN now() ELSE connected_at END,
                      disconnected_at = CASE WHEN $5 THEN now() ELSE disconnected_at END,
                      updated_at = now()
                    WHERE tenant_id=$1 AND agent_id=$2
                    """,
                    tenant_id, agent_id, status, reason, disconnected, connected
                )
                logger.info(f"Connection status updated: tenant={tenant_id}, agent={agent_id}, status={status}")
        except Exception:
            logger.error(f"Failed to update connection status: tenant={tenant_id}, agent={agent_id}", exc_info=True)
            AppMetrics.database_error("connection_update_status")
            raise

    async def delete(self, tenant_id: str, agent_id: str) -> bool:
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    "DELETE FROM channel_connections WHERE tenant_id=$1 AND agent_id=$2",
                    tenant_id, agent_id
                )
                return int(result.split()[-1]) > 0 if result else False
        except Exception:
            logger.error(f"Failed to delete connection record: tenant={tenant_id}, agent={agent_id}", exc_info=True)
            AppMetrics.database_error("connection_delete")
            raise

    async def list_for_tenant(self, tenant_id: str) -> list[ConnectionRecord]:
        try:
            async with safe_db_conn() as conn:
                rows = await conn.fetch(
                    f"SELECT {_COLUMNS} FROM channel_connections WHERE tenant_id=$1 ORDER BY created_at",
                    tenant_id
                )
                return [_row_to_record(row) for row in rows]
        except Exception:
            logger.error(f"Failed to list connection records: tenant={tenant_id}", exc_info=True)
            AppMetrics.database_error("connection_list")
            raise
