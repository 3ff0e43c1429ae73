# chatrelay/infra/activity_log.py
"""
Activity events for channel lifecycle and conversations.

Events go to a dedicated logger named "activity" (separate from the
application log) so they can be routed to their own sink via logging
configuration.  Recording is fire-and-forget: it never raises.
"""
from __future__ import annotations

import logging
from typing import Any

_activity_logger = logging.getLogger("activity")


class LoggingActivitySink:
    """``ActivitySink`` that writes one INFO record per event."""

    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger or _activity_logger

    def record(self, event: dict[str, Any]) -> None:
        event_type = event.get("event_type", "unknown")
        tenant_id = event.get("tenant_id") or "-"
        agent_id = event.get("agent_id") or "-"
        try:
            self._logger.info(
                f"ACTIVITY: {event_type} tenant={tenant_id} agent={agent_id}",
                extra={"activity": dict(event), "tenant_id": tenant_id, "agent_id": agent_id},
            )
        except Exception:
            logging.getLogger(__name__).warning(
                f"Failed to record activity event {event_type}", exc_info=True
            )


def activity_event(
    event_type: str,
    *,
    tenant_id: str | None = None,
    agent_id: str | None = None,
    actor: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build an activity event dict."""
    event: dict[str, Any] = {
        "event_type": event_type,
        "tenant_id": tenant_id or "",
        "agent_id": agent_id or "",
        "actor": actor or "",
        "detail": detail,
    }
    if extra:
        event.update(extra)
    return event
