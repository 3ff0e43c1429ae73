# chatrelay/core/errors.py
"""
Typed errors for channel sessions and the message relay.

Each error carries the HTTP status code the transport layer answers with.
``LockUnavailable`` and ``CacheUnavailable`` are degraded-mode signals: the
relay logs them and keeps going.
"""
from __future__ import annotations


class ChannelError(Exception):
    """Base class for all channel / relay errors."""

    status_code: int = 500
    code: str = "CHANNEL_ERROR"

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationFailed(ChannelError):
    """Invalid request payload (400)."""

    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationFailure(ChannelError):
    """The channel rejected the stored or scanned credentials (401)."""

    status_code = 401
    code = "AUTHENTICATION_FAILED"


class AgentNotFound(ChannelError):
    """No chat agent for this tenant / agent id (404)."""

    status_code = 404
    code = "AGENT_NOT_FOUND"


class InitializationTimeout(ChannelError):
    """Neither ready nor auth failure arrived before the ceiling (408)."""

    status_code = 408
    code = "INITIALIZATION_TIMEOUT"


class QRTimeout(ChannelError):
    """No QR code was rendered before the ceiling (408)."""

    status_code = 408
    code = "QR_TIMEOUT"


class NotConnected(ChannelError):
    """Operation needs a paired, ready channel (409)."""

    status_code = 409
    code = "NOT_CONNECTED"


class SendFailure(ChannelError):
    """The protocol client failed to deliver an outbound message (502)."""

    status_code = 502
    code = "SEND_FAILED"


class BackendUnavailable(ChannelError):
    """The remote agent backend failed or is unreachable (502)."""

    status_code = 502
    code = "BACKEND_UNAVAILABLE"


class LockUnavailable(ChannelError):
    """Creation lock could not be acquired; relay proceeds without it."""

    status_code = 503
    code = "LOCK_UNAVAILABLE"


class CacheUnavailable(ChannelError):
    """Shared cache is unreachable; dedup and locking fail open."""

    status_code = 503
    code = "CACHE_UNAVAILABLE"
