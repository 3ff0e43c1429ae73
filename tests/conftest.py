# tests/conftest.py
"""Pytest configuration and fixtures"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from chatrelay.core.connector import ChannelConnector  # noqa: E402
from chatrelay.core.domain import SessionKey  # noqa: E402
from chatrelay.infra.pg_cache_async import InMemoryCache  # noqa: E402
from chatrelay.infra.session_store import FileSessionStore  # noqa: E402
from tests.fakes import (  # noqa: E402
    FakeAgentBackend,
    FakeClientFactory,
    FakeConnectionRepository,
    FakeConversationRepository,
    RecordingActivitySink,
)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def session_key() -> SessionKey:
    return SessionKey("tenant_a", "agent_1")


@pytest.fixture
def session_store(tmp_path) -> FileSessionStore:
    return FileSessionStore(tmp_path / "sessions")


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def make_connector(client_factory, session_store, cache):
    def _make(key: SessionKey, **kwargs) -> ChannelConnector:
        options = {
            "client_factory": client_factory,
            "session_store": session_store,
            "cache": cache,
            "init_timeout": 5.0,
            "qr_timeout": 1.0,
            "qr_poll_interval": 0.01,
            "qr_renderer": lambda payload: f"data:image/png;base64,{payload}",
        }
        options.update(kwargs)
        return ChannelConnector(key, **options)
    return _make


@pytest.fixture
def connector(make_connector, session_key) -> ChannelConnector:
    return make_connector(session_key)


@pytest.fixture
def connections() -> FakeConnectionRepository:
    return FakeConnectionRepository()


@pytest.fixture
def conversations() -> FakeConversationRepository:
    return FakeConversationRepository()


@pytest.fixture
def backend() -> FakeAgentBackend:
    return FakeAgentBackend()


@pytest.fixture
def activity() -> RecordingActivitySink:
    return RecordingActivitySink()
