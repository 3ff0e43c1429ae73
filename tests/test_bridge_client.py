# tests/test_bridge_client.py
"""Tests for chatrelay/infra/bridge_client.py: bridge websocket protocol client."""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatrelay.infra.bridge_client import (
    BridgeChannelClient,
    BridgeError,
    bridge_client_factory,
    parse_message,
)


class FakeWebSocket:
    """Async-iterable websocket that replays ``frames`` then closes."""

    def __init__(self, frames: list[str] | None = None):
        self.frames = list(frames or [])
        self.sent: list[dict] = []
        self.closed = False

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.frames:
            await asyncio.sleep(0)
            yield frame


def _client(**kwargs) -> BridgeChannelClient:
    return BridgeChannelClient(
        "tenant_a_agent_1", "/sessions/tenant_a_agent_1",
        bridge_url="ws://bridge:3001", **kwargs,
    )


async def _settle():
    for _ in range(20):
        await asyncio.sleep(0)


class TestParseMessage:
    def test_full_frame(self):
        msg = parse_message({
            "type": "message", "id": "ABC", "sender": "15557654321@c.us", "body": "hi",
            "has_media": False, "from_me": False, "pushname": "Dana", "timestamp": 1700000000,
        })
        assert msg.message_id == "ABC"
        assert msg.sender == "15557654321@c.us"
        assert msg.sender_name == "Dana"
        assert msg.contact_address() == "15557654321"

    def test_alternate_field_names(self):
        msg = parse_message({"id": 7, "from": "155@c.us", "content": "yo", "has_media": True, "media_type": "image"})
        assert msg.message_id == "7"
        assert msg.sender == "155@c.us"
        assert msg.body == "yo"
        assert msg.media_type == "image"


class TestFrames:
    @pytest.mark.asyncio
    async def test_lifecycle_frames_are_queued_in_order(self):
        client = _client()

        client._handle_frame(json.dumps({"type": "qr", "qr": "2@abc"}))
        client._handle_frame(json.dumps({"type": "status", "status": "authenticated"}))
        client._handle_frame(json.dumps({"type": "status", "status": "connected"}))
        client._handle_frame(json.dumps({"type": "status", "status": "disconnected", "reason": "LOGOUT"}))
        client._handle_frame(json.dumps({"type": "auth_failure", "reason": "bad"}))

        queued = [client._events.get_nowait() for _ in range(client._events.qsize())]
        assert queued == [
            ("qr", ("2@abc",)),
            ("authenticated", ()),
            ("ready", ()),
            ("disconnected", ("LOGOUT",)),
            ("auth_failure", ("bad",)),
        ]

    @pytest.mark.asyncio
    async def test_message_frame_is_emitted(self):
        client = _client()
        received = []
        client.on("message", lambda m: received.append(m))

        client._handle_frame(json.dumps({"type": "message", "id": "M1", "sender": "155@c.us", "body": "hi"}))
        await _settle()

        assert [m.message_id for m in received] == ["M1"]

    @pytest.mark.asyncio
    async def test_invalid_json_is_ignored(self):
        client = _client()
        client._handle_frame("not json {")
        assert client._events.qsize() == 0

    @pytest.mark.asyncio
    async def test_listener_errors_are_contained(self):
        client = _client()
        calls = []

        def broken():
            raise RuntimeError("listener bug")

        client.on("ready", broken)
        client.on("ready", lambda: calls.append("second"))

        await client._emit("ready")

        assert calls == ["second"]

    @pytest.mark.asyncio
    async def test_off_removes_listener(self):
        client = _client()
        calls = []
        listener = lambda: calls.append(1)  # noqa: E731
        client.on("ready", listener)
        client.off("ready", listener)

        await client._emit("ready")

        assert calls == []


class TestRequests:
    @pytest.mark.asyncio
    async def test_request_without_connection(self):
        with pytest.raises(BridgeError):
            await _client().send_message("155@c.us", "hi")

    @pytest.mark.asyncio
    async def test_result_resolves_request(self):
        client = _client()
        client._ws = FakeWebSocket()

        task = asyncio.create_task(client.send_message("155@c.us", "hi"))
        await _settle()
        sent = client._ws.sent[-1]
        assert sent["type"] == "send"
        assert sent["to"] == "155@c.us"
        assert sent["text"] == "hi"

        client._handle_frame(json.dumps({"type": "result", "request_id": sent["request_id"], "data": {"id": "wamid.1"}}))

        assert await task == "wamid.1"
        assert client._pending == {}

    @pytest.mark.asyncio
    async def test_error_rejects_request(self):
        client = _client()
        client._ws = FakeWebSocket()

        task = asyncio.create_task(client.get_info())
        await _settle()
        request_id = client._ws.sent[-1]["request_id"]

        client._handle_frame(json.dumps({"type": "error", "request_id": request_id, "error": "not ready"}))

        with pytest.raises(BridgeError, match="not ready"):
            await task

    @pytest.mark.asyncio
    async def test_info_maps_fields(self):
        client = _client()
        client._ws = FakeWebSocket()

        task = asyncio.create_task(client.get_info())
        await _settle()
        request_id = client._ws.sent[-1]["request_id"]
        client._handle_frame(json.dumps({
            "type": "result", "request_id": request_id,
            "data": {"phone_number": "15551234567", "platform": "android", "pushname": "Acme"},
        }))

        info = await task
        assert info.phone_number == "15551234567"
        assert info.display_name == "Acme"

    @pytest.mark.asyncio
    async def test_request_timeout(self):
        client = _client(request_timeout=0.01)
        client._ws = FakeWebSocket()

        with pytest.raises(asyncio.TimeoutError):
            await client.fetch_messages("155@c.us")
        assert client._pending == {}


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_sends_auth_and_start(self):
        ws = FakeWebSocket()
        client = _client(bridge_token="s3cret")

        with patch("chatrelay.infra.bridge_client.websockets.connect", AsyncMock(return_value=ws)):
            await client.initialize()
        await client.destroy()

        assert ws.sent[0] == {"type": "auth", "token": "s3cret"}
        assert ws.sent[1] == {
            "type": "start",
            "session": "tenant_a_agent_1",
            "artifact_dir": "/sessions/tenant_a_agent_1",
        }
        assert ws.sent[-1] == {"type": "stop"}
        assert ws.closed is True

    @pytest.mark.asyncio
    async def test_frames_dispatch_and_unexpected_close(self):
        ws = FakeWebSocket([json.dumps({"type": "qr", "qr": "2@abc"})])
        client = _client()
        events = []
        client.on("qr", lambda payload: events.append(("qr", payload)))
        client.on("disconnected", lambda reason: events.append(("disconnected", reason)))

        with patch("chatrelay.infra.bridge_client.websockets.connect", AsyncMock(return_value=ws)):
            await client.initialize()
        await _settle()

        assert events == [("qr", "2@abc"), ("disconnected", "bridge connection closed")]
        await client.destroy()

    @pytest.mark.asyncio
    async def test_destroy_fails_pending_requests(self):
        client = _client()
        client._ws = FakeWebSocket()
        task = asyncio.create_task(client.get_info())
        await _settle()

        await client.destroy()

        with pytest.raises(BridgeError):
            await task

    def test_factory_builds_clients(self):
        factory = bridge_client_factory("ws://bridge:3001", "tok")
        client = factory("s1", "/tmp/s1")
        assert isinstance(client, BridgeChannelClient)
        assert client.bridge_token == "tok"
        assert client.artifact_dir == "/tmp/s1"
