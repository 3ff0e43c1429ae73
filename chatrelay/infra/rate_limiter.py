# chatrelay/infra/rate_limiter.py
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from typing import Optional

from fastapi import Request, HTTPException, status

from chatrelay.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """
    Sliding-window rate limiter, per key.

    Per-process: with N replicas the effective limit is N × max_requests.
    """

    def __init__(self, max_requests: int, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = Lock()

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """
        Returns:
            (allowed, retry_after_seconds)
        """
        now = time.time()
        cutoff = now - self.window_seconds

        with self._lock:
            recent = [ts for ts in self._requests[key] if ts > cutoff]
            self._requests[key] = recent

            if len(recent) >= self.max_requests:
                retry_after = int(min(recent) + self.window_seconds - now) + 1
                logger.warning(
                    f"Rate limit exceeded for key={key}",
                    extra={"count": len(recent), "limit": self.max_requests, "retry_after": retry_after},
                )
                return False, retry_after

            recent.append(now)
            return True, None

    def cleanup(self, max_age_seconds: int = 3600) -> int:
        """Drop keys idle for longer than ``max_age_seconds``. Returns number removed."""
        cutoff = time.time() - max_age_seconds

        with self._lock:
            stale = [k for k, ts in self._requests.items() if not ts or max(ts) < cutoff]
            for key in stale:
                del self._requests[key]

        if stale:
            logger.info(f"Rate limiter cleanup: removed {len(stale)} keys")
        return len(stale)


def _client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitDependency:
    """FastAPI dependency: one window per (tenant, client IP)."""

    def __init__(self, limiter: InMemoryRateLimiter):
        self.limiter = limiter

    async def __call__(self, request: Request) -> None:
        tenant_id = request.path_params.get("tenant_id", "-")
        allowed, retry_after = self.limiter.is_allowed(f"{tenant_id}:{_client_ip(request)}")

        if not allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(retry_after)} if retry_after else None,
            )
