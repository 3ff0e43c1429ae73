# chatrelay/infra/pg_cache_async.py
"""
Shared cache implementations.

Holds dedup markers and conversation creation locks.  ``set_if_absent`` is
the only operation that must be atomic across processes.

- ``AsyncPostgresCache``: ``cache_entries`` table, shared by every instance.
- ``InMemoryCache``: per-process dict, single-instance deployments and tests.
- ``NullCache``: no cache at all; lookups miss and every lock is granted.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from chatrelay.infra.db_resilience_async import safe_db_conn
from chatrelay.infra.logging_config import get_logger
from chatrelay.infra.metrics import AppMetrics

logger = get_logger(__name__)

_EXPIRES_AT = "CASE WHEN $3::float8 IS NULL THEN NULL ELSE now() + make_interval(secs => $3::float8) END"


class AsyncPostgresCache:
    """SharedCache backed by the ``cache_entries`` table."""

    async def get(self, key: str) -> Optional[str]:
        try:
            async with safe_db_conn() as conn:
                return await conn.fetchval(
                    """
                    SELECT value FROM cache_entries
                    WHERE key=$1 AND (expires_at IS NULL OR expires_at > now())
                    """,
                    key
                )
        except Exception:
            logger.error(f"Cache get failed: key={key}", exc_info=True)
            AppMetrics.cache_error("get")
            raise

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO cache_entries(key, value, expires_at)
                    VALUES ($1, $2, {_EXPIRES_AT})
                    ON CONFLICT (key)
                    DO UPDATE SET
                      value = EXCLUDED.value,
                      expires_at = EXCLUDED.expires_at,
                      created_at = now()
                    """,
                    key, value, float(ttl_seconds) if ttl_seconds else None
                )
        except Exception:
            logger.error(f"Cache set failed: key={key}", exc_info=True)
            AppMetrics.cache_error("set")
            raise

    async def delete(self, key: str) -> None:
        try:
            async with safe_db_conn() as conn:
                await conn.execute("DELETE FROM cache_entries WHERE key=$1", key)
        except Exception:
            logger.error(f"Cache delete failed: key={key}", exc_info=True)
            AppMetrics.cache_error("delete")
            raise

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        # An expired row counts as absent and is taken over in place
        try:
            async with safe_db_conn() as conn:
                taken = await conn.fetchval(
                    f"""
                    INSERT INTO cache_entries(key, value, expires_at)
                    VALUES ($1, $2, {_EXPIRES_AT})
                    ON CONFLICT (key)
                    DO UPDATE SET
                      value = EXCLUDED.value,
                      expires_at = EXCLUDED.expires_at,
                      created_at = now()
                    WHERE cache_entries.expires_at IS NOT NULL
                      AND cache_entries.expires_at <= now()
                    RETURNING key
                    """,
                    key, value, float(ttl_seconds)
                )
                return taken is not None
        except Exception:
            logger.error(f"Cache set_if_absent failed: key={key}", exc_info=True)
            AppMetrics.cache_error("set_if_absent")
            raise

    async def purge_expired(self) -> int:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                "DELETE FROM cache_entries WHERE expires_at IS NOT NULL AND expires_at <= now()"
            )
        # asyncpg execute returns "DELETE N"
        deleted = int(result.split()[-1]) if result else 0
        if deleted > 0:
            logger.info(f"Purged {deleted} expired cache entries")
        return deleted


class InMemoryCache:
    """
    Per-process SharedCache.

    Not shared across instances: dedup and creation locks only hold within
    this process.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._clock() + ttl_seconds)
        return True

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, exp) in self._data.items() if exp is not None and exp <= now]
        for k in expired:
            del self._data[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


class NullCache:
    """No-op SharedCache: nothing is remembered, every lock is granted."""

    async def get(self, key: str) -> Optional[str]:
        return None

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None

    async def exists(self, key: str) -> bool:
        return False

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return True

    async def purge_expired(self) -> int:
        return 0


def build_cache(backend: str):
    if backend == "postgres":
        return AsyncPostgresCache()
    if backend == "memory":
        return InMemoryCache()
    if backend == "none":
        return NullCache()
    raise ValueError(f"Unknown cache backend: {backend}")
