# chatrelay/infra/agent_backend.py
"""
Remote conversational-agent backend client (Retell chat API).

Two calls:
- ``POST /create-chat``             → ``chat_id``
- ``POST /create-chat-completion``  → ``messages: [{role, content}, ...]``

Error classification:
- 404 on create-chat            → AgentNotFound (unknown agent id)
- any other non-2xx / transport → BackendUnavailable
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable

import aiohttp

from chatrelay.core.errors import AgentNotFound, BackendUnavailable
from chatrelay.infra.http_client import get_agent_backend_session
from chatrelay.infra.logging_config import get_logger
from chatrelay.infra.metrics import inc_counter

logger = get_logger(__name__)


async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json(content_type=None)
    except Exception:
        logger.warning(f"Agent backend returned non-JSON body: status={resp.status}")
        return None


async def _safe_response_text(resp: aiohttp.ClientResponse, max_len: int = 300) -> str:
    """Read response body as text, truncated for safe logging."""
    try:
        text = await resp.text()
        return text[:max_len]
    except Exception:
        return "<unreadable>"


class RetellAgentBackend:
    """``AgentBackend`` over the Retell chat HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        session_factory: Callable[[], aiohttp.ClientSession] = get_agent_backend_session,
    ):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session_factory = session_factory

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def create_conversation(self, agent_id: str, context: dict[str, Any]) -> str:
        payload = {
            "agent_id": agent_id,
            "retell_llm_dynamic_variables": context,
            "metadata": {
                "channel": context.get("channel"),
                "tenant_id": context.get("tenant_id"),
                "customer_phone": context.get("customer_phone"),
            },
        }
        body = await self._post("create-chat", payload, agent_id=agent_id)

        chat_id = body.get("chat_id")
        if not chat_id:
            raise BackendUnavailable("Agent backend response has no chat_id")

        logger.info(f"Agent conversation created: agent={agent_id}, chat_id={chat_id}")
        inc_counter("agent_backend_conversations_created")
        return chat_id

    async def send_turn(self, conversation_id: str, text: str) -> dict[str, Any]:
        body = await self._post(
            "create-chat-completion",
            {"chat_id": conversation_id, "content": text},
        )
        turns = [
            {"role": m.get("role"), "content": m.get("content")}
            for m in body.get("messages") or []
            if isinstance(m, dict)
        ]
        logger.debug(f"Agent completion received: chat_id={conversation_id}, turns={len(turns)}")
        return {"turns": turns}

    async def _post(self, path: str, payload: dict, *, agent_id: str | None = None) -> dict:
        url = f"{self.base_url}/{path}"
        try:
            session = self._session_factory()
            async with session.post(url, json=payload, headers=self._headers()) as resp:
                if resp.status in (200, 201):
                    body = await _safe_response_json(resp)
                    if body is None:
                        raise BackendUnavailable(f"Agent backend {path}: invalid JSON response")
                    return body

                detail = await _safe_response_text(resp)
                inc_counter("agent_backend_errors", path=path, status=str(resp.status))

                if resp.status == 404 and agent_id is not None:
                    logger.warning(f"Agent backend: agent not found: agent={agent_id}")
                    raise AgentNotFound(f"Chat agent {agent_id} not found")

                logger.error(f"Agent backend error: path={path}, status={resp.status}, body={detail}")
                raise BackendUnavailable(f"Agent backend {path} failed with status {resp.status}")

        except (AgentNotFound, BackendUnavailable):
            raise
        except aiohttp.ClientError as exc:
            inc_counter("agent_backend_errors", path=path, status="network")
            logger.error(f"Agent backend request failed: path={path}, error={type(exc).__name__}: {exc}")
            raise BackendUnavailable(f"Agent backend unreachable: {exc}") from exc
        except asyncio.TimeoutError as exc:
            inc_counter("agent_backend_errors", path=path, status="timeout")
            logger.error(f"Agent backend request timed out: path={path}")
            raise BackendUnavailable("Agent backend request timed out") from exc
