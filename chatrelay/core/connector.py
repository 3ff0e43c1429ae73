# chatrelay/core/connector.py
"""
Channel connector: the live object mediating one channel session.

One connector per (tenant, agent) session key, owned by the
``ConnectorRegistry``.  Wraps a protocol client and turns its event stream
into an explicit state machine::

    UNINITIALIZED → INITIALIZING → (AWAITING_QR | READY) → DISCONNECTED
    READY → DISCONNECTED,  DISCONNECTED → INITIALIZING
    any → DESTROYED  (explicit disconnect, terminal)

Initialization races three outcomes (ready, auth failure, ceiling timeout)
into a single one-shot future.  Whichever comes first settles it; the
others are no-ops.

Every event listener is attached to the client BEFORE its start routine
runs: a cached session can authenticate and fire ``ready`` from inside
``initialize()``.
"""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional

from chatrelay.core.domain import (
    ChannelMessage,
    ConnectionStatus,
    ConnectorState,
    QRResult,
    SessionKey,
    TeardownResult,
    TRANSITIONS,
)
from chatrelay.core.errors import (
    AuthenticationFailure,
    CacheUnavailable,
    ChannelError,
    InitializationTimeout,
    NotConnected,
    QRTimeout,
    SendFailure,
)
from chatrelay.core.ports import ChannelClient, ChannelClientFactory, SharedCache
from chatrelay.infra.logging_config import get_logger, LogContext
from chatrelay.infra.metrics import AppMetrics
from chatrelay.infra.qr_render import render_qr_data_url
from chatrelay.infra.session_store import FileSessionStore

logger = get_logger(__name__)

DEDUP_KEY_PREFIX = "chatrelay:msg:"
CHANNEL_DOMAIN = "c.us"


def normalize_recipient(to: str) -> str:
    """``+1 555-0100`` → ``15550100@c.us``; addresses that carry a domain pass through."""
    if "@" in to:
        return to
    digits = "".join(ch for ch in to if ch.isdigit())
    return f"{digits or to}@{CHANNEL_DOMAIN}"


def dedup_key(message_id: str) -> str:
    return f"{DEDUP_KEY_PREFIX}{message_id}"


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _consume_exception(fut: asyncio.Future) -> None:
    # Mark a failed settle as retrieved when nobody is awaiting it
    if not fut.cancelled():
        fut.exception()


class ChannelConnector:
    """State machine around one protocol client."""

    type = "whatsapp"
    name = "WhatsApp"

    def __init__(
        self,
        session_key: SessionKey,
        *,
        client_factory: ChannelClientFactory,
        session_store: FileSessionStore,
        cache: SharedCache,
        init_timeout: float = 120.0,
        qr_timeout: float = 30.0,
        qr_poll_interval: float = 0.5,
        dedup_ttl_seconds: int = 86400,
        qr_renderer: Callable[[str], str] = render_qr_data_url,
    ):
        self.session_key = session_key
        self.session_id = session_key.serialize()
        self._client_factory = client_factory
        self._session_store = session_store
        self._cache = cache
        self.init_timeout = init_timeout
        self.qr_timeout = qr_timeout
        self.qr_poll_interval = qr_poll_interval
        self.dedup_ttl_seconds = dedup_ttl_seconds
        self._qr_renderer = qr_renderer

        self.state = ConnectorState.UNINITIALIZED
        self.client: Optional[ChannelClient] = None
        self.qr_payload: Optional[str] = None
        self.qr_image: Optional[str] = None
        self.is_connected = False
        self.is_active = False

        self._ready_callback: Optional[Callable[[], Any]] = None
        self._qr_callback: Optional[Callable[[str, Optional[str]], Any]] = None
        self._disconnect_callback: Optional[Callable[[str], Any]] = None
        self._message_handler: Optional[Callable[[ChannelMessage], Any]] = None

        self.pending_initialization: Optional[asyncio.Future] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None

        self._log = LogContext(logger, tenant_id=session_key.tenant_id, agent_id=session_key.agent_id)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new_state: ConnectorState) -> bool:
        if new_state is ConnectorState.DESTROYED:
            self.state = new_state
            return True
        if new_state not in TRANSITIONS[self.state]:
            self._log.debug(f"Ignoring transition {self.state.value} → {new_state.value}")
            return False
        self.state = new_state
        return True

    def _settle(self, error: BaseException | None = None) -> bool:
        """Resolve the pending initialization exactly once. False if already settled."""
        fut = self.pending_initialization
        if fut is None or fut.done():
            return False
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        if error is None:
            fut.set_result(True)
        else:
            fut.set_exception(error)
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, force_new: bool = False) -> bool:
        """
        Create the protocol client and start it.

        Returns as soon as the client's start routine has been issued; use
        ``wait_until_ready()`` to block on the ready / auth-failure / timeout race.
        """
        if self.state is ConnectorState.DESTROYED:
            raise ChannelError("Connector was destroyed; acquire a new one")

        if self.client is not None:
            if not force_new and self.state is not ConnectorState.DISCONNECTED:
                self._log.warning("Channel client already initialized")
                return True
            await self._discard_client()

        self._log.info(f"Initializing channel connector: session={self.session_id}")
        self._session_store.ensure_base_dir()
        self._transition(ConnectorState.INITIALIZING)

        client = self._client_factory(
            self.session_id,
            str(self._session_store.artifact_dir(self.session_id)),
        )
        self.client = client
        self._attach_listeners(client)

        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        fut.add_done_callback(_consume_exception)
        self.pending_initialization = fut
        self._timeout_handle = loop.call_later(self.init_timeout, self._on_init_timeout)

        try:
            await client.initialize()
        except Exception as exc:
            self.is_connected = False
            self.is_active = False
            self._settle(error=exc)
            self._transition(ConnectorState.DISCONNECTED)
            self._log.error(f"Failed to initialize channel client: {exc}", exc_info=True)
            raise

        if self.client is not client:
            # Torn down while the start routine was running: stop the late starter
            self._log.warning("Connector torn down during client start, destroying the started client")
            try:
                await client.destroy()
            except Exception as exc:
                self._log.warning(f"Error destroying late-started channel client: {exc}")
            raise NotConnected("Connector disconnected before it became ready")

        self._log.info(f"Channel client initialization started: session={self.session_id}")
        return True

    async def wait_until_ready(self) -> bool:
        if self.is_connected:
            return True
        if self.pending_initialization is None:
            raise NotConnected("No connection in progress. Call initialize() first.")
        return await asyncio.shield(self.pending_initialization)

    def _on_init_timeout(self) -> None:
        self._timeout_handle = None
        error = InitializationTimeout(
            f"Channel connection timeout after {self.init_timeout:g}s"
        )
        if self._settle(error=error):
            self._log.warning(f"Channel initialization timed out: session={self.session_id}")
            AppMetrics.connector_event("init_timeout")
            if self.client is not None:
                self._detach_race_listeners(self.client)

    async def _discard_client(self) -> None:
        client = self.client
        self.client = None
        if client is None:
            return
        self._detach_listeners(client)
        try:
            await client.destroy()
        except Exception as exc:
            self._log.warning(f"Error destroying previous channel client: {exc}")

    # ------------------------------------------------------------------
    # Listener wiring
    # ------------------------------------------------------------------

    def _event_listeners(self) -> dict[str, Callable[..., Any]]:
        return {
            "qr": self._handle_qr,
            "authenticated": self._handle_authenticated,
            "ready": self._handle_ready,
            "auth_failure": self._handle_auth_failure,
            "disconnected": self._handle_disconnected,
            "message": self._handle_message,
        }

    def _race_listeners(self) -> dict[str, Callable[..., Any]]:
        return {
            "ready": self._race_ready,
            "auth_failure": self._race_auth_failure,
        }

    def _attach_listeners(self, client: ChannelClient) -> None:
        for event, listener in self._event_listeners().items():
            client.on(event, listener)
        # After the state listeners so flags are set before the race settles
        for event, listener in self._race_listeners().items():
            client.on(event, listener)

    def _detach_race_listeners(self, client: ChannelClient) -> None:
        for event, listener in self._race_listeners().items():
            client.off(event, listener)

    def _detach_listeners(self, client: ChannelClient) -> None:
        for event, listener in self._event_listeners().items():
            client.off(event, listener)
        self._detach_race_listeners(client)

    def _race_ready(self) -> None:
        if self._settle() and self.client is not None:
            self._detach_race_listeners(self.client)

    def _race_auth_failure(self, reason: str = "") -> None:
        error = AuthenticationFailure(f"Channel authentication failed: {reason}")
        if self._settle(error=error) and self.client is not None:
            self._detach_race_listeners(self.client)

    # ------------------------------------------------------------------
    # Client events
    # ------------------------------------------------------------------

    async def _handle_qr(self, payload: str) -> None:
        if not self._transition(ConnectorState.AWAITING_QR):
            return
        self.qr_payload = payload
        try:
            self.qr_image = self._qr_renderer(payload)
        except Exception as exc:
            self._log.error(f"Error rendering QR code: {exc}")
            return

        self._log.info(f"Channel QR code generated: session={self.session_id}")
        AppMetrics.connector_event("qr")

        if self._qr_callback is not None:
            try:
                await _invoke(self._qr_callback, payload, self.qr_image)
            except Exception as exc:
                self._log.error(f"QR callback failed: {exc}", exc_info=True)

    def _handle_authenticated(self) -> None:
        if self.state is ConnectorState.DESTROYED:
            return
        self._log.info(f"Channel authenticated: session={self.session_id}")
        self.qr_payload = None
        self.qr_image = None

    async def _handle_ready(self) -> None:
        if not self._transition(ConnectorState.READY):
            return
        self.is_connected = True
        self.is_active = True
        self.qr_payload = None
        self.qr_image = None
        self._log.info(f"Channel client ready: session={self.session_id}")
        AppMetrics.connector_event("ready")

        if self._ready_callback is not None:
            try:
                await _invoke(self._ready_callback)
            except Exception as exc:
                self._log.error(f"Ready callback failed: {exc}", exc_info=True)

    def _handle_auth_failure(self, reason: str = "") -> None:
        if not self._transition(ConnectorState.DISCONNECTED):
            return
        self._log.error(f"Channel authentication failed: {reason}")
        self.is_connected = False
        self.is_active = False
        AppMetrics.connector_event("auth_failure")

    async def _handle_disconnected(self, reason: str = "") -> None:
        if not self._transition(ConnectorState.DISCONNECTED):
            return
        self._log.warning(f"Channel client disconnected: reason={reason}")
        self.is_connected = False
        self.is_active = False
        AppMetrics.connector_event("disconnected")

        if self._disconnect_callback is not None:
            try:
                await _invoke(self._disconnect_callback, reason)
            except Exception as exc:
                self._log.error(f"Disconnect callback failed: {exc}", exc_info=True)

    async def _handle_message(self, message: ChannelMessage) -> None:
        if self.state is ConnectorState.DESTROYED:
            return
        if message.from_me:
            return

        # Checked before the dedup marker so a later redelivery is still processed
        handler = self._message_handler
        if handler is None:
            self._log.warning(f"No message handler registered, dropping message_id={message.message_id}")
            return

        if not await self._first_delivery(message):
            self._log.debug(f"Duplicate message ignored: message_id={message.message_id}")
            AppMetrics.duplicate_dropped()
            return

        self._log.debug(
            f"Channel message received: message_id={message.message_id}, has_media={message.has_media}"
        )
        try:
            await _invoke(handler, message)
        except Exception as exc:
            self._log.error(f"Error in message handler: {exc}", exc_info=True)

    async def _first_delivery(self, message: ChannelMessage) -> bool:
        """Claim the dedup marker. Fails open when the id is missing or the cache is down."""
        if not message.message_id:
            self._log.warning("Inbound message has no id, skipping dedup")
            return True
        try:
            return await self._cache.set_if_absent(dedup_key(message.message_id), "1", self.dedup_ttl_seconds)
        except Exception as exc:
            degraded = CacheUnavailable(f"Dedup cache unavailable: {exc}")
            self._log.warning(f"{degraded.detail}, processing anyway")
            AppMetrics.cache_error("dedup")
            return True

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def generate_qr(self) -> QRResult:
        """
        Return a scannable QR code, or ``already_connected`` once paired.

        Initializes the client if needed, then polls for a rendered image.

        Raises:
            QRTimeout: no QR image within ``qr_timeout`` seconds.
            AuthenticationFailure / InitializationTimeout: initialization failed while waiting.
        """
        if self.is_connected:
            return self._already_connected_result()

        if self.client is None or self.state is ConnectorState.DISCONNECTED:
            await self.initialize()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.qr_timeout

        while True:
            if self.is_connected:
                return self._already_connected_result()
            if self.qr_image:
                return QRResult(
                    already_connected=False,
                    message="Scan this QR code with the WhatsApp mobile app",
                    qr_payload=self.qr_payload,
                    qr_image=self.qr_image,
                )
            fut = self.pending_initialization
            if fut is not None and fut.done() and not fut.cancelled() and fut.exception() is not None:
                raise fut.exception()
            if loop.time() >= deadline:
                raise QRTimeout(f"QR code generation timeout after {self.qr_timeout:g}s")
            await asyncio.sleep(self.qr_poll_interval)

    def _already_connected_result(self) -> QRResult:
        return QRResult(already_connected=True, message="WhatsApp is already connected")

    async def get_connection_status(self) -> ConnectionStatus:
        """
        Report liveness by probing the client, not by trusting flags.

        A failed probe (or one without an identity) downgrades the connector
        to disconnected before returning.
        """
        status = ConnectionStatus(
            is_connected=self.is_connected,
            is_active=self.is_active,
            has_qr=bool(self.qr_image),
            qr_image=self.qr_image,
        )

        if self.is_connected:
            info = None
            if self.client is not None:
                try:
                    info = await self.client.get_info()
                except Exception as exc:
                    self._log.warning(f"Could not fetch channel client info: {exc}")

            if info is None or not info.phone_number:
                self._log.warning("Channel probe returned no identity, marking disconnected")
                self.is_connected = False
                self.is_active = False
                self._transition(ConnectorState.DISCONNECTED)
                status.is_connected = False
                status.is_active = False
            else:
                status.phone_number = info.phone_number
                status.platform = info.platform
                status.display_name = info.display_name

        status.status = self.state.value
        return status

    async def disconnect(self) -> TeardownResult:
        """Best-effort teardown. Never raises; the instance is safe to discard afterwards."""
        if self.client is None:
            self._reset()
            return TeardownResult(ok=True, message="Client not initialized")

        client = self.client
        # Callbacks stay registered on the client but become inert
        self._transition(ConnectorState.DESTROYED)
        warnings: list[str] = []
        try:
            await client.destroy()
        except Exception as exc:
            warnings.append(f"client destroy failed: {exc}")
            self._log.warning(f"Error destroying channel client: {exc}")
        finally:
            self._reset()

        self._log.info(f"Channel client disconnected: session={self.session_id}")
        AppMetrics.connector_event("destroyed")
        return TeardownResult(
            ok=not warnings,
            message="WhatsApp disconnected successfully",
            warnings=warnings,
        )

    def _reset(self) -> None:
        self.state = ConnectorState.DESTROYED
        self.client = None
        self.qr_payload = None
        self.qr_image = None
        self.is_connected = False
        self.is_active = False
        self._settle(error=NotConnected("Connector disconnected before it became ready"))

    async def send_message(self, to: str, body: str) -> str:
        """
        Send a text message; returns the provider message id.

        Raises:
            NotConnected: channel is not paired / ready.
            SendFailure: the client failed to deliver.
        """
        if not self.is_connected or self.client is None:
            raise NotConnected("WhatsApp is not connected")

        chat_id = normalize_recipient(to)
        try:
            message_id = await self.client.send_message(chat_id, body)
        except Exception as exc:
            self._log.error(f"Channel send failed: {exc}")
            raise SendFailure(f"Failed to send message: {exc}") from exc

        self._log.info(f"Channel message sent: message_id={message_id}")
        return message_id

    async def get_chat_history(self, chat_id: str, limit: int = 50) -> list[dict]:
        if not self.is_connected or self.client is None:
            raise NotConnected("WhatsApp is not connected")
        return await self.client.fetch_messages(normalize_recipient(chat_id), limit)

    # ------------------------------------------------------------------
    # Callback registration (single slot each)
    # ------------------------------------------------------------------

    def on_message(self, handler: Callable[[ChannelMessage], Any]) -> None:
        """Register THE message handler; a previous one is discarded."""
        if not callable(handler):
            raise TypeError("Message handler must be callable")
        self._message_handler = handler
        self._log.info("Message handler registered")

    def on_qr(self, callback: Callable[[str, Optional[str]], Any]) -> None:
        self._qr_callback = callback

    def on_ready(self, callback: Callable[[], Any]) -> None:
        self._ready_callback = callback

    def on_disconnect(self, callback: Callable[[str], Any]) -> None:
        self._disconnect_callback = callback

    @property
    def has_message_handler(self) -> bool:
        return self._message_handler is not None

    def metadata(self) -> dict:
        return {
            "type": self.type,
            "name": self.name,
            "session": self.session_id,
            "state": self.state.value,
            "is_active": self.is_active,
            "is_connected": self.is_connected,
        }
