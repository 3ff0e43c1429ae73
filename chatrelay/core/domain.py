# chatrelay/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ============================================================================
# SESSION KEY
# ============================================================================

SESSION_KEY_SEPARATOR = "~"
_SAFE_KEY_CHARS = frozenset("abcdefghijklmnopqrstuvwxyz0123456789_-")


def _encode_key_part(value: str) -> str:
    # Lowercase-only output: every other character (separator, escape,
    # upper case) becomes %xx per UTF-8 byte
    return "".join(
        ch if ch in _SAFE_KEY_CHARS else "".join(f"%{byte:02x}" for byte in ch.encode("utf-8"))
        for ch in value
    )


@dataclass(frozen=True)
class SessionKey:
    """One tenant-agent channel session (and one artifact directory on disk)."""
    tenant_id: str
    agent_id: str

    def serialize(self) -> str:
        """
        Filesystem-safe session id, distinct for every distinct key.

        ``("tenant_a", "agent_1")`` → ``tenant_a~agent_1``.  The output never
        contains upper-case letters, so case variants of one key can not
        name another key's artifacts.
        """
        return f"{_encode_key_part(self.tenant_id)}{SESSION_KEY_SEPARATOR}{_encode_key_part(self.agent_id)}"

    def __str__(self) -> str:
        return self.serialize()


# ============================================================================
# CONNECTOR STATE MACHINE
# ============================================================================

class ConnectorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AWAITING_QR = "awaiting_qr"
    READY = "ready"
    DISCONNECTED = "disconnected"
    DESTROYED = "destroyed"


# Allowed transitions; DESTROYED is reachable from every state via disconnect().
TRANSITIONS: dict[ConnectorState, frozenset[ConnectorState]] = {
    ConnectorState.UNINITIALIZED: frozenset({ConnectorState.INITIALIZING}),
    ConnectorState.INITIALIZING: frozenset({
        ConnectorState.AWAITING_QR,
        ConnectorState.READY,
        ConnectorState.DISCONNECTED,
    }),
    ConnectorState.AWAITING_QR: frozenset({
        ConnectorState.AWAITING_QR,
        ConnectorState.READY,
        ConnectorState.DISCONNECTED,
    }),
    ConnectorState.READY: frozenset({ConnectorState.DISCONNECTED}),
    ConnectorState.DISCONNECTED: frozenset({ConnectorState.INITIALIZING}),
    ConnectorState.DESTROYED: frozenset(),
}


class ConnectionRecordStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ConversationStatus(str, Enum):
    ONGOING = "ongoing"
    ENDED = "ended"


# ============================================================================
# CHANNEL MESSAGES
# ============================================================================

@dataclass
class ChannelMessage:
    """
    Normalized inbound message delivered by the protocol client.

    ``sender`` is the full channel address (``15551234567@c.us``);
    ``message_id`` is the protocol-unique identifier used for dedup.
    """
    message_id: str
    sender: str
    body: str = ""
    has_media: bool = False
    media_type: Optional[str] = None
    from_me: bool = False
    sender_name: Optional[str] = None
    timestamp: Optional[int] = None

    def has_text(self) -> bool:
        return bool(self.body and self.body.strip())

    def contact_address(self) -> str:
        """Sender without the channel domain suffix."""
        return self.sender.split("@", 1)[0]


@dataclass
class ClientInfo:
    """Identity reported by a paired protocol client."""
    phone_number: Optional[str] = None
    platform: Optional[str] = None
    display_name: Optional[str] = None


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class ConnectionStatus:
    is_connected: bool = False
    is_active: bool = False
    has_qr: bool = False
    qr_image: Optional[str] = None
    phone_number: Optional[str] = None
    platform: Optional[str] = None
    display_name: Optional[str] = None
    status: Optional[str] = None
    note: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class QRResult:
    already_connected: bool
    message: str
    qr_payload: Optional[str] = None
    qr_image: Optional[str] = None
    phone_number: Optional[str] = None
    platform: Optional[str] = None
    display_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class TeardownResult:
    """Outcome of a best-effort teardown. Callers proceed regardless of ``warnings``."""
    ok: bool
    message: str
    warnings: list[str] = field(default_factory=list)


@dataclass
class DisconnectSummary:
    client_disconnected: bool = False
    connection_deleted: bool = False
    conversations_ended: int = 0
    session_files_removed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return dict(self.__dict__)


# ============================================================================
# PERSISTED RECORDS
# ============================================================================

@dataclass
class ConnectionRecord:
    tenant_id: str
    agent_id: str
    status: str = ConnectionRecordStatus.PENDING.value
    phone_number: Optional[str] = None
    platform: Optional[str] = None
    display_name: Optional[str] = None
    qr_generated: bool = False
    disconnect_reason: Optional[str] = None
    created_by: Optional[str] = None
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Conversation:
    tenant_id: str
    agent_id: str
    contact_address: str
    conversation_id: str
    status: str = ConversationStatus.ONGOING.value
    turns: list[dict[str, Any]] = field(default_factory=list)
    contact_name: Optional[str] = None
    channel: str = "whatsapp"
    dynamic_variables: dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    ended_by: Optional[str] = None
    ended_reason: Optional[str] = None
    last_message_at: Optional[datetime] = None

    @property
    def message_count(self) -> int:
        return len(self.turns)
