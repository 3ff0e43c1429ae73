# tests/test_agent_backend.py
"""Tests for chatrelay/infra/agent_backend.py: Retell chat API client."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from chatrelay.core.errors import AgentNotFound, BackendUnavailable
from chatrelay.infra.agent_backend import RetellAgentBackend


def _response(status: int = 200, body: dict | None = None, text: str = ""):
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=body)
    resp.text = AsyncMock(return_value=text)
    return resp


def _session(resp=None, error: Exception | None = None):
    session = MagicMock()
    if error is not None:
        session.post = MagicMock(side_effect=error)
        return session
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)
    session.post = MagicMock(return_value=ctx)
    return session


def _backend(session) -> RetellAgentBackend:
    return RetellAgentBackend("https://agents.example.com/", "key_123", session_factory=lambda: session)


class TestCreateConversation:
    @pytest.mark.asyncio
    async def test_returns_chat_id(self):
        session = _session(_response(201, {"chat_id": "chat_abc"}))
        context = {"channel": "whatsapp", "tenant_id": "t", "customer_phone": "155", "phone_number": "155"}

        chat_id = await _backend(session).create_conversation("agent_1", context)

        assert chat_id == "chat_abc"
        url = session.post.call_args.args[0]
        kwargs = session.post.call_args.kwargs
        assert url == "https://agents.example.com/create-chat"
        assert kwargs["json"]["agent_id"] == "agent_1"
        assert kwargs["json"]["retell_llm_dynamic_variables"] == context
        assert kwargs["json"]["metadata"] == {"channel": "whatsapp", "tenant_id": "t", "customer_phone": "155"}
        assert kwargs["headers"]["Authorization"] == "Bearer key_123"

    @pytest.mark.asyncio
    async def test_unknown_agent(self):
        session = _session(_response(404, text="agent not found"))
        with pytest.raises(AgentNotFound):
            await _backend(session).create_conversation("missing", {})

    @pytest.mark.asyncio
    async def test_missing_chat_id(self):
        session = _session(_response(200, {"status": "ok"}))
        with pytest.raises(BackendUnavailable):
            await _backend(session).create_conversation("agent_1", {})

    @pytest.mark.asyncio
    async def test_server_error(self):
        session = _session(_response(500, text="oops"))
        with pytest.raises(BackendUnavailable):
            await _backend(session).create_conversation("agent_1", {})


class TestSendTurn:
    @pytest.mark.asyncio
    async def test_maps_messages_to_turns(self):
        body = {"messages": [
            {"role": "agent", "content": "Hi! How can I help?", "message_id": "m1"},
            "garbage",
        ]}
        session = _session(_response(200, body))

        result = await _backend(session).send_turn("chat_abc", "hello")

        assert result == {"turns": [{"role": "agent", "content": "Hi! How can I help?"}]}
        assert session.post.call_args.kwargs["json"] == {"chat_id": "chat_abc", "content": "hello"}

    @pytest.mark.asyncio
    async def test_404_on_completion_is_unavailable(self):
        session = _session(_response(404, text="chat ended"))
        with pytest.raises(BackendUnavailable):
            await _backend(session).send_turn("chat_abc", "hello")

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        resp = _response(200)
        resp.json = AsyncMock(side_effect=ValueError("not json"))
        with pytest.raises(BackendUnavailable):
            await _backend(_session(resp)).send_turn("chat_abc", "hello")

    @pytest.mark.asyncio
    async def test_network_error(self):
        session = _session(error=aiohttp.ClientConnectionError("refused"))
        with pytest.raises(BackendUnavailable):
            await _backend(session).send_turn("chat_abc", "hello")

    @pytest.mark.asyncio
    async def test_timeout(self):
        session = _session(error=asyncio.TimeoutError())
        with pytest.raises(BackendUnavailable, match="timed out"):
            await _backend(session).send_turn("chat_abc", "hello")

    def test_no_api_key_omits_auth_header(self):
        backend = RetellAgentBackend("https://agents.example.com", None)
        assert "Authorization" not in backend._headers()
