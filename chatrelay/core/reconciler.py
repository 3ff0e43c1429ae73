# chatrelay/core/reconciler.py
"""
Status for a session key that has no live connector.

The persisted record cannot prove liveness: without a client in this
process nothing can be sent.  A ``connected`` record is therefore reported
as not connected (``status="stale"``); the caller should re-connect.
"""
from __future__ import annotations

from chatrelay.core.domain import ConnectionRecordStatus, ConnectionStatus, SessionKey
from chatrelay.core.ports import AsyncConnectionRepository
from chatrelay.infra.logging_config import get_logger

logger = get_logger(__name__)

STALE_NOTE = "Connection record exists but no active client in this process; reconnect to resume"


class ConnectionStatusReconciler:

    def __init__(self, connections: AsyncConnectionRepository):
        self._connections = connections

    async def reconcile(self, key: SessionKey) -> ConnectionStatus:
        try:
            record = await self._connections.get(key.tenant_id, key.agent_id)
        except Exception as exc:
            logger.warning(f"Connection record lookup failed for session={key}: {exc}")
            return ConnectionStatus(status="not_initialized")

        if record is None:
            return ConnectionStatus(status="not_initialized")

        if record.status == ConnectionRecordStatus.CONNECTED.value:
            logger.info(f"Stale connection record for session={key}")
            return ConnectionStatus(
                is_connected=False,
                is_active=False,
                phone_number=record.phone_number,
                platform=record.platform,
                display_name=record.display_name,
                status="stale",
                note=STALE_NOTE,
            )

        if record.status == ConnectionRecordStatus.PENDING.value:
            return ConnectionStatus(status="pending")

        return ConnectionStatus(status=record.status)
