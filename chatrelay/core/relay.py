# chatrelay/core/relay.py
"""
Inbound message relay: channel → remote agent → channel.

For each inbound message the relay maps the sender to exactly one ongoing
conversation (creating it under a shared-cache creation lock on first
contact), forwards the text as one turn, persists the transcript and sends
the agent's reply back through the connector.

The relay never raises: any failure sends a single apology to the sender
when the connector is still connected.

Degraded modes:
- Creation lock unavailable (cache down, or still held after one retry):
  proceed without it and log a warning.
- Transcript persistence failure: logged, the reply is still sent.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

from chatrelay.core.domain import ChannelMessage, Conversation, SessionKey
from chatrelay.core.errors import LockUnavailable
from chatrelay.core.ports import (
    ActivitySink,
    AgentBackend,
    AsyncConversationRepository,
    SharedCache,
)
from chatrelay.infra.activity_log import activity_event
from chatrelay.infra.logging_config import get_logger, LogContext
from chatrelay.infra.metrics import AppMetrics

logger = get_logger(__name__)

CHANNEL_NAME = "whatsapp"
LOCK_KEY_PREFIX = "chatrelay:conversation:lock:"
DEFAULT_APOLOGY = (
    "Sorry, I'm having trouble processing your message right now. "
    "Please try again later."
)
AGENT_ROLES = ("agent", "assistant")


def lock_key(key: SessionKey, contact: str) -> str:
    return f"{LOCK_KEY_PREFIX}{key.tenant_id}:{key.agent_id}:{contact}"


def message_text(message: ChannelMessage) -> Optional[str]:
    """Text to forward, or None when the message carries nothing to relay."""
    if message.has_text():
        return message.body.strip()
    if message.has_media:
        return f"[{message.media_type or 'media'} message]"
    return None


def extract_agent_reply(turns: list[dict[str, Any]]) -> Optional[str]:
    """
    Last non-empty agent/assistant turn; otherwise the last turn's content.
    """
    if not turns:
        return None
    for turn in reversed(turns):
        if turn.get("role") in AGENT_ROLES and turn.get("content"):
            return turn["content"]
    return turns[-1].get("content") or None


class InboundMessageRelay:

    def __init__(
        self,
        conversations: AsyncConversationRepository,
        backend: AgentBackend,
        cache: SharedCache,
        *,
        activity: ActivitySink | None = None,
        lock_ttl_seconds: int = 10,
        lock_retry_delay: float = 0.5,
        apology_message: str = DEFAULT_APOLOGY,
    ):
        self._conversations = conversations
        self._backend = backend
        self._cache = cache
        self._activity = activity
        self.lock_ttl_seconds = lock_ttl_seconds
        self.lock_retry_delay = lock_retry_delay
        self.apology_message = apology_message

    async def handle(self, key: SessionKey, message: ChannelMessage, connector) -> None:
        text = message_text(message)
        if text is None:
            return

        contact = message.contact_address()
        log = LogContext(logger, tenant_id=key.tenant_id, agent_id=key.agent_id, contact=contact)
        log.info(f"Relaying inbound message: message_id={message.message_id}")

        try:
            conversation = await self._resolve_conversation(key, contact, message.sender_name, log)

            with AppMetrics.track_backend_time("send_turn"):
                result = await self._backend.send_turn(conversation.conversation_id, text)
            turns = result.get("turns") or []

            await self._persist_turns(key, conversation, turns, log)

            reply = extract_agent_reply(turns)
            if reply:
                await connector.send_message(message.sender, reply)
                log.info(f"Agent reply sent: conversation_id={conversation.conversation_id}")
            else:
                log.warning(f"Agent returned no reply: conversation_id={conversation.conversation_id}")

            AppMetrics.message_relayed(key.tenant_id, "ok")

        except Exception as exc:
            log.error(f"Error relaying inbound message: {exc}", exc_info=True)
            AppMetrics.message_relayed(key.tenant_id, "error")
            await self._send_apology(key, message.sender, connector, log)

    # ------------------------------------------------------------------
    # Conversation mapping
    # ------------------------------------------------------------------

    async def _resolve_conversation(
        self,
        key: SessionKey,
        contact: str,
        contact_name: Optional[str],
        log: LogContext,
    ) -> Conversation:
        existing = await self._conversations.find_ongoing(key.tenant_id, key.agent_id, contact)
        if existing is not None:
            return existing

        lk = lock_key(key, contact)
        acquired = await self._try_lock(lk, log)

        try:
            if not acquired:
                AppMetrics.lock_contention("waited")
                await asyncio.sleep(self.lock_retry_delay)

                existing = await self._conversations.find_ongoing(key.tenant_id, key.agent_id, contact)
                if existing is not None:
                    log.info("Conversation created by a concurrent handler")
                    return existing

                acquired = await self._try_lock(lk, log)
                if not acquired:
                    AppMetrics.lock_contention("proceeded_unlocked")
                    log.warning("Could not acquire conversation creation lock, proceeding anyway")

            # Another handler may have finished between our lookup and the lock
            existing = await self._conversations.find_ongoing(key.tenant_id, key.agent_id, contact)
            if existing is not None:
                return existing

            return await self._create_conversation(key, contact, contact_name, log)

        finally:
            if acquired:
                try:
                    await self._cache.delete(lk)
                except Exception as exc:
                    log.warning(f"Failed to release conversation creation lock: {exc}")

    async def _try_lock(self, lk: str, log: LogContext) -> bool:
        try:
            return await self._cache.set_if_absent(lk, "1", self.lock_ttl_seconds)
        except Exception as exc:
            degraded = LockUnavailable(f"Creation lock unavailable: {exc}")
            log.warning(f"{degraded.detail}, proceeding without lock")
            AppMetrics.cache_error("creation_lock")
            return False

    async def _create_conversation(
        self,
        key: SessionKey,
        contact: str,
        contact_name: Optional[str],
        log: LogContext,
    ) -> Conversation:
        variables: dict[str, Any] = {
            "phone_number": contact,
            "agent_id": key.agent_id,
            "tenant_id": key.tenant_id,
            "customer_phone": contact,
            "channel": CHANNEL_NAME,
        }
        if contact_name:
            variables["customer_name"] = contact_name

        with AppMetrics.track_backend_time("create_conversation"):
            conversation_id = await self._backend.create_conversation(key.agent_id, variables)

        conversation = Conversation(
            tenant_id=key.tenant_id,
            agent_id=key.agent_id,
            contact_address=contact,
            conversation_id=conversation_id,
            contact_name=contact_name,
            channel=CHANNEL_NAME,
            dynamic_variables=variables,
        )
        await self._conversations.insert(conversation, created_by=CHANNEL_NAME)

        log.info(f"Conversation created: conversation_id={conversation_id}")
        AppMetrics.conversation_created(key.tenant_id)
        self._record("conversation_created", key, contact=contact, conversation_id=conversation_id)
        return conversation

    async def _persist_turns(
        self,
        key: SessionKey,
        conversation: Conversation,
        turns: list[dict[str, Any]],
        log: LogContext,
    ) -> None:
        if not turns:
            return
        try:
            await self._conversations.update_turns(key.tenant_id, conversation.conversation_id, turns)
            conversation.turns = turns
        except Exception as exc:
            log.warning(f"Failed to persist transcript: {exc}")
            AppMetrics.database_error("update_turns")

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def _send_apology(self, key: SessionKey, to: str, connector, log: LogContext) -> None:
        if not getattr(connector, "is_connected", False):
            log.warning("Channel not connected, apology not sent")
            return
        try:
            await connector.send_message(to, self.apology_message)
            AppMetrics.apology_sent(key.tenant_id)
        except Exception as exc:
            log.error(f"Failed to send apology message: {exc}")

    def _record(self, event_type: str, key: SessionKey, **fields: Any) -> None:
        if self._activity is None:
            return
        self._activity.record(activity_event(
            event_type, tenant_id=key.tenant_id, agent_id=key.agent_id, extra=fields,
        ))
