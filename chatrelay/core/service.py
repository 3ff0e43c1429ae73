# chatrelay/core/service.py
"""
Channel application service.

Orchestrates the operator-facing operations over the registry, connectors,
relay and repositories:

- connect:          pair (QR) or report already connected
- status:           live probe, or reconciliation when no connector exists
- disconnect:       teardown + record deletion + conversation end + artifact purge
- send:             outbound text through a ready connector
- list_messages:    channel conversations for one agent
- list_connections: every connection record for a tenant

Lifecycle callbacks keep the persisted ``ConnectionRecord`` in step with the
connector and re-attach the relay's message handler on every ready event.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from chatrelay.core.connector import ChannelConnector
from chatrelay.core.domain import (
    ConnectionRecord,
    ConnectionRecordStatus,
    ConnectionStatus,
    ConnectorState,
    Conversation,
    DisconnectSummary,
    QRResult,
    SessionKey,
)
from chatrelay.core.errors import NotConnected, ValidationFailed
from chatrelay.core.ports import (
    ActivitySink,
    AsyncConnectionRepository,
    AsyncConversationRepository,
)
from chatrelay.core.reconciler import ConnectionStatusReconciler
from chatrelay.core.registry import ConnectorRegistry
from chatrelay.core.relay import InboundMessageRelay
from chatrelay.infra.activity_log import activity_event
from chatrelay.infra.logging_config import get_logger, LogContext
from chatrelay.infra.metrics import AppMetrics

logger = get_logger(__name__)

DISCONNECT_ENDED_BY = "whatsapp-disconnect"
DISCONNECT_REASON = "WhatsApp connection disconnected"
MAX_PAGE_SIZE = 200


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _keep_connector(connector: ChannelConnector) -> bool:
    """
    Reuse a connector that is paired or still pairing.

    Ready connectors are probed first; a dead one (and any disconnected or
    destroyed connector) is replaced.
    """
    if connector.state is ConnectorState.READY:
        status = await connector.get_connection_status()
        return status.is_connected
    return connector.state not in (ConnectorState.DISCONNECTED, ConnectorState.DESTROYED)


class ChannelService:

    def __init__(
        self,
        registry: ConnectorRegistry,
        relay: InboundMessageRelay,
        reconciler: ConnectionStatusReconciler,
        connections: AsyncConnectionRepository,
        conversations: AsyncConversationRepository,
        *,
        activity: ActivitySink | None = None,
    ):
        self.registry = registry
        self._relay = relay
        self._reconciler = reconciler
        self._connections = connections
        self._conversations = conversations
        self._activity = activity

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    async def connect(self, tenant_id: str, agent_id: str, *, actor: str | None = None) -> QRResult:
        """
        Start pairing for one agent.

        Returns ``already_connected`` when a live, ready connector exists (or
        a cached session authenticates before a QR appears); otherwise a QR
        code to scan.  Pairing failures propagate to the caller.
        """
        key = SessionKey(tenant_id, agent_id)
        log = LogContext(logger, tenant_id=tenant_id, agent_id=agent_id)
        log.info(f"Initializing channel connection: actor={actor or '-'}")

        connector = await self.registry.acquire(key, keep=_keep_connector)
        if connector.is_connected:
            status = await connector.get_connection_status()
            if status.is_connected:
                log.info("Channel already connected, reusing connector")
                self._attach_message_handler(key, connector)
                return self._connected_result(status)

        self._wire(key, connector, actor)

        result = await connector.generate_qr()

        if result.already_connected:
            status = await connector.get_connection_status()
            await self._store_connection(key, actor, status, qr_generated=False)
            return self._connected_result(status)

        if not connector.is_connected:
            await self._store_pending(key, actor)
            if connector.is_connected:
                # Paired while the pending record was being written
                status = await connector.get_connection_status()
                await self._store_connection(key, actor, status, qr_generated=True)
        self._record("channel.qr_generated", key, actor=actor)
        return result

    def _wire(self, key: SessionKey, connector: ChannelConnector, actor: str | None) -> None:
        async def on_ready() -> None:
            await self._handle_ready(key, connector, actor)

        async def on_disconnect(reason: str) -> None:
            await self._handle_disconnect(key, actor, reason)

        connector.on_ready(on_ready)
        connector.on_disconnect(on_disconnect)
        self._attach_message_handler(key, connector)

    def _attach_message_handler(self, key: SessionKey, connector: ChannelConnector) -> None:
        # Bound to this connector even if the registry entry is later replaced
        async def handle(message) -> None:
            await self._relay.handle(key, message, connector)

        connector.on_message(handle)

    async def _handle_ready(self, key: SessionKey, connector: ChannelConnector, actor: str | None) -> None:
        self._attach_message_handler(key, connector)
        try:
            status = await connector.get_connection_status()
        except Exception as exc:
            logger.error(f"Error probing connector after ready for session={key}: {exc}")
            status = ConnectionStatus(is_connected=True, is_active=True)
        await self._store_connection(key, actor, status, qr_generated=False)
        self._record("channel.connected", key, actor=actor, extra={"phone_number": status.phone_number})

    async def _handle_disconnect(self, key: SessionKey, actor: str | None, reason: str) -> None:
        try:
            await self._connections.update_status(
                key.tenant_id, key.agent_id,
                ConnectionRecordStatus.DISCONNECTED.value,
                reason=reason,
            )
        except Exception as exc:
            logger.error(f"Error updating connection status for session={key}: {exc}")
            AppMetrics.database_error("update_status")
        self._record("channel.disconnected", key, actor=actor, detail=reason)

    async def _store_connection(
        self,
        key: SessionKey,
        actor: str | None,
        status: ConnectionStatus,
        *,
        qr_generated: bool,
    ) -> None:
        record = ConnectionRecord(
            tenant_id=key.tenant_id,
            agent_id=key.agent_id,
            status=ConnectionRecordStatus.CONNECTED.value,
            phone_number=status.phone_number,
            platform=status.platform,
            display_name=status.display_name,
            qr_generated=qr_generated,
            created_by=actor,
            connected_at=_now(),
        )
        await self._upsert(record)

    async def _store_pending(self, key: SessionKey, actor: str | None) -> None:
        record = ConnectionRecord(
            tenant_id=key.tenant_id,
            agent_id=key.agent_id,
            status=ConnectionRecordStatus.PENDING.value,
            qr_generated=True,
            created_by=actor,
        )
        await self._upsert(record)

    async def _upsert(self, record: ConnectionRecord) -> None:
        try:
            await self._connections.upsert(record)
        except Exception as exc:
            logger.error(
                f"Error storing connection record for tenant={record.tenant_id}, "
                f"agent={record.agent_id}: {exc}"
            )
            AppMetrics.database_error("upsert_connection")

    @staticmethod
    def _connected_result(status: ConnectionStatus) -> QRResult:
        return QRResult(
            already_connected=True,
            message="WhatsApp is already connected",
            phone_number=status.phone_number,
            platform=status.platform,
            display_name=status.display_name,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self, tenant_id: str, agent_id: str) -> ConnectionStatus:
        key = SessionKey(tenant_id, agent_id)
        connector = self.registry.get(key)
        if connector is not None:
            return await connector.get_connection_status()
        return await self._reconciler.reconcile(key)

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    async def disconnect(self, tenant_id: str, agent_id: str, *, actor: str | None = None) -> DisconnectSummary:
        """
        Tear the session down completely.

        Client teardown, record deletion, conversation ending and artifact
        purge are each best-effort; failures land in ``warnings``.
        """
        key = SessionKey(tenant_id, agent_id)
        log = LogContext(logger, tenant_id=tenant_id, agent_id=agent_id)
        summary = DisconnectSummary()

        summary.client_disconnected = self.registry.get(key) is not None
        purge = await self.registry.release(key, purge_artifacts=True)
        if purge is not None:
            summary.session_files_removed = purge.removed
            summary.warnings.extend(purge.warnings)

        try:
            summary.connection_deleted = await self._connections.delete(tenant_id, agent_id)
        except Exception as exc:
            summary.warnings.append(f"connection record delete failed: {exc}")
            log.error(f"Error deleting connection record: {exc}")
            AppMetrics.database_error("delete_connection")

        try:
            summary.conversations_ended = await self._conversations.end_all_ongoing(
                tenant_id, agent_id,
                ended_by=DISCONNECT_ENDED_BY,
                reason=DISCONNECT_REASON,
            )
        except Exception as exc:
            summary.warnings.append(f"ending conversations failed: {exc}")
            log.error(f"Error ending ongoing conversations: {exc}")
            AppMetrics.database_error("end_conversations")

        log.info(
            f"Channel disconnected: client={summary.client_disconnected}, "
            f"record_deleted={summary.connection_deleted}, "
            f"conversations_ended={summary.conversations_ended}"
        )
        self._record("channel.disconnect_requested", key, actor=actor)
        return summary

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send(self, tenant_id: str, agent_id: str, to: str, message: str) -> str:
        if not to or not to.strip():
            raise ValidationFailed("Recipient is required")
        if not message or not message.strip():
            raise ValidationFailed("Message text is required")

        connector = self.registry.get(SessionKey(tenant_id, agent_id))
        if connector is None:
            raise NotConnected("WhatsApp is not connected")
        return await connector.send_message(to.strip(), message)

    async def list_messages(
        self,
        tenant_id: str,
        agent_id: str,
        *,
        limit: int = 50,
        skip: int = 0,
    ) -> list[Conversation]:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationFailed(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if skip < 0:
            raise ValidationFailed("skip must be >= 0")
        return await self._conversations.list_for_agent(tenant_id, agent_id, limit=limit, skip=skip)

    async def list_connections(self, tenant_id: str) -> list[ConnectionRecord]:
        return await self._connections.list_for_tenant(tenant_id)

    async def shutdown(self) -> None:
        await self.registry.shutdown()

    # ------------------------------------------------------------------

    def _record(
        self,
        event_type: str,
        key: SessionKey,
        *,
        actor: Optional[str] = None,
        detail: str = "",
        extra: dict | None = None,
    ) -> None:
        if self._activity is None:
            return
        self._activity.record(activity_event(
            event_type,
            tenant_id=key.tenant_id,
            agent_id=key.agent_id,
            actor=actor,
            detail=detail,
            extra=extra,
        ))
