# chatrelay/core/ports.py
from __future__ import annotations
from typing import Any, Awaitable, Callable, Optional, Protocol

from chatrelay.core.domain import (
    ClientInfo,
    ConnectionRecord,
    Conversation,
)


EventCallback = Callable[..., Awaitable[None] | None]


# ============================================================================
# CHANNEL PROTOCOL CLIENT
# ============================================================================

class ChannelClient(Protocol):
    """
    Protocol client for one channel session.

    Emits: ``qr(payload)``, ``authenticated()``, ``ready()``,
    ``auth_failure(reason)``, ``disconnected(reason)``, ``message(ChannelMessage)``.
    """

    def on(self, event: str, callback: EventCallback) -> None: ...
    def off(self, event: str, callback: EventCallback) -> None: ...
    async def initialize(self) -> None: ...
    async def destroy(self) -> None: ...
    async def get_info(self) -> Optional[ClientInfo]: ...
    async def send_message(self, chat_id: str, body: str) -> str: ...
    async def fetch_messages(self, chat_id: str, limit: int = 50) -> list[dict]: ...


class ChannelClientFactory(Protocol):
    def __call__(self, session_id: str, artifact_dir: str) -> ChannelClient: ...


# ============================================================================
# SHARED CACHE
# ============================================================================

class SharedCache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...
    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...
    async def delete(self, key: str) -> None: ...
    async def exists(self, key: str) -> bool: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """
        True  => key was absent (or expired) and is now ours
        False => someone else holds it
        """
        ...


# ============================================================================
# REPOSITORIES
# ============================================================================

class AsyncConnectionRepository(Protocol):
    async def get(self, tenant_id: str, agent_id: str) -> Optional[ConnectionRecord]: ...
    async def upsert(self, record: ConnectionRecord) -> None: ...
    async def update_status(
        self, tenant_id: str, agent_id: str, status: str, *, reason: str | None = None
    ) -> None: ...
    async def delete(self, tenant_id: str, agent_id: str) -> bool: ...
    async def list_for_tenant(self, tenant_id: str) -> list[ConnectionRecord]: ...


class AsyncConversationRepository(Protocol):
    async def find_ongoing(
        self, tenant_id: str, agent_id: str, contact_address: str
    ) -> Optional[Conversation]: ...
    async def insert(self, conversation: Conversation, *, created_by: str) -> None: ...
    async def update_turns(
        self, tenant_id: str, conversation_id: str, turns: list[dict[str, Any]]
    ) -> None: ...
    async def end_all_ongoing(
        self, tenant_id: str, agent_id: str, *, ended_by: str, reason: str
    ) -> int: ...
    async def list_for_agent(
        self, tenant_id: str, agent_id: str, *, limit: int = 50, skip: int = 0
    ) -> list[Conversation]: ...


# ============================================================================
# REMOTE AGENT BACKEND / ACTIVITY
# ============================================================================

class AgentBackend(Protocol):
    async def create_conversation(self, agent_id: str, context: dict[str, Any]) -> str: ...

    async def send_turn(self, conversation_id: str, text: str) -> dict[str, Any]:
        """Returns ``{"turns": [{"role": ..., "content": ...}, ...]}``."""
        ...


class ActivitySink(Protocol):
    def record(self, event: dict[str, Any]) -> None: ...
