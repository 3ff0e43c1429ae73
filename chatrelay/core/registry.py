# chatrelay/core/registry.py
"""
Connector registry: the single owner of live channel connectors.

Holds at most one ``ChannelConnector`` per session key.  All acquisition and
release for a key runs under that key's ``asyncio.Lock``, so a forced
replacement (disconnect → purge artifacts → settle → construct) can never
interleave with another acquire for the same key.

Usage:
    registry = ConnectorRegistry(connector_factory=build_connector, session_store=store)
    connector = await registry.acquire(key)
    ...
    await registry.release(key)
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from chatrelay.core.connector import ChannelConnector
from chatrelay.core.domain import SessionKey
from chatrelay.infra.logging_config import get_logger
from chatrelay.infra.session_store import FileSessionStore, PurgeResult

logger = get_logger(__name__)


ConnectorFactory = Callable[[SessionKey], ChannelConnector]
KeepPredicate = Callable[[ChannelConnector], Awaitable[bool]]


class ConnectorRegistry:

    def __init__(
        self,
        connector_factory: ConnectorFactory,
        session_store: FileSessionStore,
        *,
        settle_delay: float = 0.5,
    ):
        self._connector_factory = connector_factory
        self._session_store = session_store
        self.settle_delay = settle_delay
        self._connectors: dict[SessionKey, ChannelConnector] = {}
        self._locks: dict[SessionKey, asyncio.Lock] = {}

    def _lock_for(self, key: SessionKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def get(self, key: SessionKey) -> Optional[ChannelConnector]:
        """Live connector for ``key`` or None. Never creates one."""
        return self._connectors.get(key)

    def keys(self) -> list[SessionKey]:
        return list(self._connectors)

    def __len__(self) -> int:
        return len(self._connectors)

    async def acquire(
        self,
        key: SessionKey,
        force_new: bool = False,
        *,
        keep: Optional[KeepPredicate] = None,
    ) -> ChannelConnector:
        """
        Return the live connector for ``key``, creating one if needed.

        ``keep`` decides, under the key's lock, whether an existing
        connector is reused; when it returns False the connector is torn
        down and replaced (artifacts are kept).

        With ``force_new=True`` any existing connector is torn down and the
        durable session artifacts are purged before a fresh connector is
        built, so the next initialization starts a new pairing.
        """
        async with self._lock_for(key):
            existing = self._connectors.get(key)
            if existing is not None and not force_new:
                if keep is None or await keep(existing):
                    return existing
                logger.info(f"Replacing channel connector: session={key}, state={existing.state.value}")
                await self._teardown(key, existing)
                if self.settle_delay > 0:
                    await asyncio.sleep(self.settle_delay)

            if force_new:
                logger.info(f"Forcing new channel connector: session={key}")
                if existing is not None:
                    await self._teardown(key, existing)
                purge = self._purge(key)
                if purge.cleaned_up:
                    logger.info(f"Session artifacts purged: session={key}, removed={purge.removed}")
                if self.settle_delay > 0:
                    await asyncio.sleep(self.settle_delay)

            connector = self._connector_factory(key)
            self._connectors[key] = connector
            logger.info(f"Channel connector created: session={key}")
            return connector

    async def release(self, key: SessionKey, *, purge_artifacts: bool = False) -> PurgeResult | None:
        """
        Disconnect and forget the connector for ``key``.

        The entry is removed even if teardown fails.  Optionally purges the
        durable session artifacts and waits the settle delay.
        """
        async with self._lock_for(key):
            connector = self._connectors.get(key)
            if connector is not None:
                await self._teardown(key, connector)

            if not purge_artifacts:
                return None

            result = self._purge(key)
            if self.settle_delay > 0:
                await asyncio.sleep(self.settle_delay)
            return result

    async def _teardown(self, key: SessionKey, connector: ChannelConnector) -> None:
        try:
            result = await connector.disconnect()
            for warning in result.warnings:
                logger.warning(f"Teardown warning for session={key}: {warning}")
        except Exception as exc:
            logger.warning(f"Error disconnecting connector for session={key}: {exc}")
        finally:
            self._connectors.pop(key, None)

    def _purge(self, key: SessionKey) -> PurgeResult:
        result = self._session_store.purge(key.serialize())
        for warning in result.warnings:
            logger.warning(f"Session purge warning for session={key}: {warning}")
        return result

    async def shutdown(self) -> None:
        """Best-effort disconnect of every live connector (application shutdown)."""
        keys = self.keys()
        if keys:
            logger.info(f"Shutting down {len(keys)} channel connector(s)")
        for key in keys:
            await self.release(key)
