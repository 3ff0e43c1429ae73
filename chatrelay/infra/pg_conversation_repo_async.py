# chatrelay/infra/pg_conversation_repo_async.py
from __future__ import annotations
import json
from typing import Any, Optional

from chatrelay.core.domain import Conversation, ConversationStatus
from chatrelay.core.ports import AsyncConversationRepository
from chatrelay.infra.db_resilience_async import safe_db_conn
from chatrelay.infra.logging_config import get_logger, mask_contact
from chatrelay.infra.metrics import AppMetrics

logger = get_logger(__name__)

_COLUMNS = """
    tenant_id, agent_id, contact_address, conversation_id, status,
    turns::text AS turns, contact_name, channel,
    dynamic_variables::text AS dynamic_variables,
    started_at, ended_at, ended_by, ended_reason, last_message_at
"""


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        tenant_id=row['tenant_id'],
        agent_id=row['agent_id'],
        contact_address=row['contact_address'],
        conversation_id=row['conversation_id'],
        status=row['status'],
        turns=json.loads(row['turns']) if row['turns'] else [],
        contact_name=row['contact_name'],
        channel=row['channel'],
        dynamic_variables=json.loads(row['dynamic_variables']) if row['dynamic_variables'] else {},
        started_at=row['started_at'],
        ended_at=row['ended_at'],
        ended_by=row['ended_by'],
        ended_reason=row['ended_reason'],
        last_message_at=row['last_message_at'],
    )


class AsyncPostgresConversationRepository(AsyncConversationRepository):
    """Channel conversations, scoped by tenant and agent."""

    def __init__(self, channel: str = "whatsapp"):
        self.channel = channel

    async def find_ongoing(
        self, tenant_id: str, agent_id: str, contact_address: str
    ) -> Optional[Conversation]:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_COLUMNS} FROM conversations
                    WHERE tenant_id=$1 AND agent_id=$2 AND contact_address=$3
                      AND channel=$4 AND status=$5
                    ORDER BY started_at DESC
                    LIMIT 1
                    """,
                    tenant_id, agent_id, contact_address, self.channel,
                    ConversationStatus.ONGOING.value
                )
                return _row_to_conversation(row) if row else None
        except Exception:
            logger.error(
                f"Failed to find ongoing conversation: tenant={tenant_id}, agent={agent_id}, "
                f"contact={mask_contact(contact_address)}",
                exc_info=True
            )
            AppMetrics.database_error("conversation_find")
            raise

    async def insert(self, conversation: Conversation, *, created_by: str) -> None:
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    INSERT INTO conversations(
                      tenant_id, conversation_id, agent_id, contact_address, contact_name,
                      channel, status, turns, message_count, dynamic_variables, created_by
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10::jsonb, $11)
                    """,
                    conversation.tenant_id, conversation.conversation_id, conversation.agent_id,
                    conversation.contact_address, conversation.contact_name,
                    conversation.channel, conversation.status,
                    json.dumps(conversation.turns), conversation.message_count,
                    json.dumps(conversation.dynamic_variables), created_by,
                )
        except Exception:
            logger.error(
                f"Failed to insert conversation: tenant={conversation.tenant_id}, "
                f"conversation={conversation.conversation_id}",
                exc_info=True
            )
            AppMetrics.database_error("conversation_insert")
            raise

    async def update_turns(
        self, tenant_id: str, conversation_id: str, turns: list[dict[str, Any]]
    ) -> None:
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    UPDATE conversations SET
                      turns = $3::jsonb,
                      message_count = $4,
                      last_message_at = now(),
                      updated_at = now()
                    WHERE tenant_id=$1 AND conversation_id=$2
                    """,
                    tenant_id, conversation_id, json.dumps(turns), len(turns)
                )
        except Exception:
            logger.error(
                f"Failed to update conversation turns: tenant={tenant_id}, conversation={conversation_id}",
                exc_info=True
            )
            AppMetrics.database_error("conversation_update_turns")
            raise

    async def end_all_ongoing(
        self, tenant_id: str, agent_id: str, *, ended_by: str, reason: str
    ) -> int:
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    """
                    UPDATE conversations SET
                      status = $6,
                      ended_at = now(),
                      ended_by = $4,
                      ended_reason = $5,
                      updated_at = now()
                    WHERE tenant_id=$1 AND agent_id=$2 AND channel=$3 AND status=$7
                    """,
                    tenant_id, agent_id, self.channel, ended_by, reason,
                    ConversationStatus.ENDED.value, ConversationStatus.ONGOING.value
                )
                # asyncpg execute returns "UPDATE N"
                ended = int(result.split()[-1]) if result else 0
                if ended:
                    logger.info(f"Ended {ended} ongoing conversations: tenant={tenant_id}, agent={agent_id}")
                return ended
        except Exception:
            logger.error(f"Failed to end conversations: tenant={tenant_id}, agent={agent_id}", exc_info=True)
            AppMetrics.database_error("conversation_end_all")
            raise

    async def list_for_agent(
        self, tenant_id: str, agent_id: str, *, limit: int = 50, skip: int = 0
    ) -> list[Conversation]:
        try:
            async with safe_db_conn() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_COLUMNS} FROM conversations
                    WHERE tenant_id=$1 AND agent_id=$2 AND channel=$3
                    ORDER BY started_at DESC
                    LIMIT $4 OFFSET $5
                    """,
                    tenant_id, agent_id, self.channel, limit, skip
                )
                return [_row_to_conversation(row) for row in rows]
        except Exception:
            logger.error(f"Failed to list conversations: tenant={tenant_id}, agent={agent_id}", exc_info=True)
            AppMetrics.database_error("conversation_list")
            raise
