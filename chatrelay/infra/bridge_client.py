# chatrelay/infra/bridge_client.py
"""
Protocol client backed by an external bridge process.

The bridge speaks the messaging network's web protocol and exposes one
websocket per session.  It persists pairing credentials in the artifact
directory we hand it, so a restarted bridge resumes without a QR scan.

Wire protocol (JSON text frames):

  client → bridge
    {"type": "auth", "token": ...}                       first frame, when configured
    {"type": "start", "session": ..., "artifact_dir": ...}
    {"type": "send", "request_id": ..., "to": ..., "text": ...}
    {"type": "info", "request_id": ...}
    {"type": "history", "request_id": ..., "chat_id": ..., "limit": ...}
    {"type": "stop"}

  bridge → client
    {"type": "qr", "qr": ...}
    {"type": "status", "status": "authenticated" | "ready" | "disconnected", "reason": ...}
    {"type": "auth_failure", "reason": ...}
    {"type": "message", "id", "sender", "body", "has_media", "media_type", "from_me", "pushname", "timestamp"}
    {"type": "result", "request_id": ..., "data": {...}}
    {"type": "error", "request_id": ..., "error": ...}
"""
from __future__ import annotations

import asyncio
import inspect
import json
import uuid
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from chatrelay.core.domain import ChannelMessage, ClientInfo
from chatrelay.core.ports import EventCallback
from chatrelay.infra.logging_config import get_logger

logger = get_logger(__name__)


def _safe_create_task(coro, *, name: str | None = None) -> asyncio.Task:
    """Create a background task with exception logging to avoid 'Task exception was never retrieved'."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task) -> None:
    """Callback: log unhandled exceptions from fire-and-forget tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            f"Background task {task.get_name()!r} failed: {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )


class BridgeError(Exception):
    """The bridge rejected a request or the connection is gone."""


def parse_message(data: dict) -> ChannelMessage:
    return ChannelMessage(
        message_id=str(data.get("id") or ""),
        sender=data.get("sender") or data.get("from") or "",
        body=data.get("body") or data.get("content") or "",
        has_media=bool(data.get("has_media", False)),
        media_type=data.get("media_type"),
        from_me=bool(data.get("from_me", False)),
        sender_name=data.get("pushname"),
        timestamp=data.get("timestamp"),
    )


class BridgeChannelClient:
    """``ChannelClient`` over one bridge websocket."""

    def __init__(
        self,
        session_id: str,
        artifact_dir: str,
        *,
        bridge_url: str,
        bridge_token: str | None = None,
        request_timeout: float = 15.0,
    ):
        self.session_id = session_id
        self.artifact_dir = artifact_dir
        self.bridge_url = bridge_url
        self.bridge_token = bridge_token
        self.request_timeout = request_timeout

        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._listeners: dict[str, list[EventCallback]] = {}
        self._pending: dict[str, asyncio.Future] = {}
        self._closing = False

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, callback: EventCallback) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def off(self, event: str, callback: EventCallback) -> None:
        callbacks = self._listeners.get(event)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)

    async def _emit(self, event: str, *args: Any) -> None:
        # Snapshot: a listener may detach itself (or others) while we iterate
        for callback in list(self._listeners.get(event, ())):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(f"Error in '{event}' listener for session={self.session_id}: {exc}", exc_info=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        logger.info(f"Connecting to channel bridge at {self.bridge_url}: session={self.session_id}")
        self._closing = False
        self._ws = await websockets.connect(self.bridge_url)

        if self.bridge_token:
            await self._ws.send(json.dumps({"type": "auth", "token": self.bridge_token}))
        await self._ws.send(json.dumps({
            "type": "start",
            "session": self.session_id,
            "artifact_dir": self.artifact_dir,
        }))

        self._events = asyncio.Queue()
        self._dispatcher = _safe_create_task(self._dispatch_loop(), name=f"bridge-events-{self.session_id}")
        self._reader = _safe_create_task(self._read_loop(), name=f"bridge-reader-{self.session_id}")

    async def destroy(self) -> None:
        self._closing = True
        ws = self._ws
        self._ws = None

        if ws is not None:
            try:
                await ws.send(json.dumps({"type": "stop"}))
            except ConnectionClosed:
                pass
            await ws.close()

        for task in (self._reader, self._dispatcher):
            if task is not None and not task.done():
                task.cancel()
        self._reader = None
        self._dispatcher = None
        self._fail_pending(BridgeError("Bridge client destroyed"))

    async def _read_loop(self) -> None:
        ws = self._ws
        reason = "bridge connection closed"
        try:
            async for raw in ws:
                try:
                    self._handle_frame(raw)
                except Exception as exc:
                    logger.error(f"Error handling bridge frame: {exc}", exc_info=True)
        except ConnectionClosed as exc:
            reason = f"bridge connection lost: {exc}"

        self._fail_pending(BridgeError(reason))
        if not self._closing:
            logger.warning(f"Channel bridge disconnected: session={self.session_id}, reason={reason}")
            self._enqueue("disconnected", reason)

    def _enqueue(self, event: str, *args: Any) -> None:
        self._events.put_nowait((event, args))

    async def _dispatch_loop(self) -> None:
        # Events run one at a time, in arrival order, off the reader so
        # listeners may await bridge requests
        while True:
            event, args = await self._events.get()
            await self._emit(event, *args)

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from bridge: {str(raw)[:100]}")
            return

        msg_type = data.get("type")

        if msg_type == "qr":
            self._enqueue("qr", data.get("qr", ""))

        elif msg_type == "status":
            status = data.get("status")
            logger.info(f"Channel bridge status: session={self.session_id}, status={status}")
            if status == "authenticated":
                self._enqueue("authenticated")
            elif status in ("ready", "connected"):
                self._enqueue("ready")
            elif status == "disconnected":
                self._enqueue("disconnected", data.get("reason") or "")

        elif msg_type == "auth_failure":
            self._enqueue("auth_failure", data.get("reason") or "")

        elif msg_type == "message":
            # Concurrent: one slow relay must not hold up other contacts
            _safe_create_task(self._emit("message", parse_message(data)), name=f"bridge-message-{self.session_id}")

        elif msg_type == "result":
            self._resolve(data.get("request_id"), result=data.get("data") or {})

        elif msg_type == "error":
            error = data.get("error") or "unknown bridge error"
            if data.get("request_id"):
                self._resolve(data["request_id"], error=BridgeError(error))
            else:
                logger.error(f"Channel bridge error: session={self.session_id}, error={error}")

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _request(self, payload: dict) -> dict:
        if self._ws is None:
            raise BridgeError("Bridge not connected")

        request_id = uuid.uuid4().hex
        fut = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        try:
            await self._ws.send(json.dumps({**payload, "request_id": request_id}))
            return await asyncio.wait_for(fut, timeout=self.request_timeout)
        finally:
            self._pending.pop(request_id, None)

    def _resolve(self, request_id: str | None, *, result: dict | None = None, error: Exception | None = None) -> None:
        fut = self._pending.get(request_id) if request_id else None
        if fut is None or fut.done():
            return
        if error is not None:
            fut.set_exception(error)
        else:
            fut.set_result(result)

    def _fail_pending(self, error: Exception) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(error)
        self._pending.clear()

    async def get_info(self) -> Optional[ClientInfo]:
        data = await self._request({"type": "info"})
        if not data:
            return None
        return ClientInfo(
            phone_number=data.get("phone_number"),
            platform=data.get("platform"),
            display_name=data.get("pushname"),
        )

    async def send_message(self, chat_id: str, body: str) -> str:
        data = await self._request({"type": "send", "to": chat_id, "text": body})
        return str(data.get("id") or "")

    async def fetch_messages(self, chat_id: str, limit: int = 50) -> list[dict]:
        data = await self._request({"type": "history", "chat_id": chat_id, "limit": limit})
        return list(data.get("messages") or [])


def bridge_client_factory(bridge_url: str, bridge_token: str | None = None):
    """``ChannelClientFactory`` producing bridge clients for one bridge endpoint."""
    def factory(session_id: str, artifact_dir: str) -> BridgeChannelClient:
        return BridgeChannelClient(
            session_id,
            artifact_dir,
            bridge_url=bridge_url,
            bridge_token=bridge_token,
        )
    return factory
