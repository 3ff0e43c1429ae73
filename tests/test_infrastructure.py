# tests/test_infrastructure.py
"""Tests for infrastructure components"""
import json
import logging
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest
from asyncpg.exceptions import PostgresError

from chatrelay.core.domain import ConnectionRecord, Conversation
from chatrelay.infra.db_resilience_async import (
    is_transient_error,
    retry_on_transient_error,
    safe_db_conn,
)


def _fake_conn_ctx(conn):
    @asynccontextmanager
    async def _ctx(*args, **kwargs):
        yield conn
    return _ctx


class TestDatabaseResilience:
    def test_connection_errors_are_transient(self):
        assert is_transient_error(ConnectionError("reset")) is True
        assert is_transient_error(asyncpg.TooManyConnectionsError("too many")) is True

    def test_message_patterns_are_transient(self):
        assert is_transient_error(OSError("server closed the connection unexpectedly")) is True

    def test_query_errors_are_not_transient(self):
        assert is_transient_error(PostgresError("syntax error at or near SELEC")) is False
        assert is_transient_error(ValueError("some other error")) is False

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_on_first_try(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def successful_operation():
            nonlocal call_count
            call_count += 1
            return "success"

        assert await successful_operation() == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_after_transient_error(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3, initial_delay=0)
        async def flaky():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise ConnectionError("connection reset")
            return "success"

        assert await flaky() == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_retry_decorator_raises_non_transient_immediately(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def broken():
            nonlocal call_count
            call_count += 1
            raise ValueError("not a transient error")

        with pytest.raises(ValueError):
            await broken()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_safe_db_conn_retries_acquisition_only(self):
        conn = MagicMock()
        attempts = 0

        @asynccontextmanager
        async def flaky_conn(autocommit=True):
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise ConnectionError("connection refused")
            yield conn

        with patch("chatrelay.infra.db_resilience_async.db_async.db_conn", flaky_conn):
            async with safe_db_conn() as got:
                assert got is conn
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_safe_db_conn_does_not_rerun_block(self):
        attempts = 0

        @asynccontextmanager
        async def ok_conn(autocommit=True):
            nonlocal attempts
            attempts += 1
            yield MagicMock()

        with patch("chatrelay.infra.db_resilience_async.db_async.db_conn", ok_conn):
            with pytest.raises(ConnectionError):
                async with safe_db_conn():
                    raise ConnectionError("query failed mid-way")
        assert attempts == 1


# ============================================================================
# Repositories (mocked connection)
# ============================================================================

class TestConnectionRepository:
    @pytest.mark.asyncio
    async def test_get_maps_row(self):
        from chatrelay.infra.pg_connection_repo_async import AsyncPostgresConnectionRepository

        row = {
            "tenant_id": "t", "agent_id": "a", "status": "connected",
            "phone_number": "15551234567", "platform": "android", "display_name": "Acme",
            "qr_generated": False, "disconnect_reason": None, "created_by": "admin",
            "connected_at": None, "disconnected_at": None, "created_at": None, "updated_at": None,
        }
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=row)

        with patch("chatrelay.infra.pg_connection_repo_async.safe_db_conn", _fake_conn_ctx(conn)):
            record = await AsyncPostgresConnectionRepository().get("t", "a")

        assert isinstance(record, ConnectionRecord)
        assert record.phone_number == "15551234567"
        assert conn.fetchrow.await_args.args[1:] == ("t", "a")

    @pytest.mark.asyncio
    async def test_delete_reports_rowcount(self):
        from chatrelay.infra.pg_connection_repo_async import AsyncPostgresConnectionRepository

        conn = MagicMock()
        conn.execute = AsyncMock(return_value="DELETE 1")

        with patch("chatrelay.infra.pg_connection_repo_async.safe_db_conn", _fake_conn_ctx(conn)):
            assert await AsyncPostgresConnectionRepository().delete("t", "a") is True

        conn.execute = AsyncMock(return_value="DELETE 0")
        with patch("chatrelay.infra.pg_connection_repo_async.safe_db_conn", _fake_conn_ctx(conn)):
            assert await AsyncPostgresConnectionRepository().delete("t", "a") is False

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        from chatrelay.infra.pg_connection_repo_async import AsyncPostgresConnectionRepository

        conn = MagicMock()
        conn.execute = AsyncMock(side_effect=PostgresError("boom"))

        with patch("chatrelay.infra.pg_connection_repo_async.safe_db_conn", _fake_conn_ctx(conn)):
            with pytest.raises(PostgresError):
                await AsyncPostgresConnectionRepository().upsert(ConnectionRecord(tenant_id="t", agent_id="a"))


class TestConversationRepository:
    @pytest.mark.asyncio
    async def test_insert_serializes_json(self):
        from chatrelay.infra.pg_conversation_repo_async import AsyncPostgresConversationRepository

        conn = MagicMock()
        conn.execute = AsyncMock(return_value="INSERT 0 1")
        conversation = Conversation(
            tenant_id="t", agent_id="a", contact_address="15557654321", conversation_id="chat_1",
            dynamic_variables={"channel": "whatsapp"},
        )

        with patch("chatrelay.infra.pg_conversation_repo_async.safe_db_conn", _fake_conn_ctx(conn)):
            await AsyncPostgresConversationRepository().insert(conversation, created_by="whatsapp")

        args = conn.execute.await_args.args
        assert json.loads(args[8]) == []
        assert json.loads(args[10]) == {"channel": "whatsapp"}
        assert args[11] == "whatsapp"

    @pytest.mark.asyncio
    async def test_end_all_ongoing_counts(self):
        from chatrelay.infra.pg_conversation_repo_async import AsyncPostgresConversationRepository

        conn = MagicMock()
        conn.execute = AsyncMock(return_value="UPDATE 3")

        with patch("chatrelay.infra.pg_conversation_repo_async.safe_db_conn", _fake_conn_ctx(conn)):
            ended = await AsyncPostgresConversationRepository().end_all_ongoing(
                "t", "a", ended_by="whatsapp-disconnect", reason="gone"
            )
        assert ended == 3

    @pytest.mark.asyncio
    async def test_find_ongoing_decodes_turns(self):
        from chatrelay.infra.pg_conversation_repo_async import AsyncPostgresConversationRepository

        row = {
            "tenant_id": "t", "agent_id": "a", "contact_address": "155", "conversation_id": "chat_1",
            "status": "ongoing", "turns": '[{"role": "agent", "content": "hi"}]',
            "contact_name": None, "channel": "whatsapp", "dynamic_variables": None,
            "started_at": None, "ended_at": None, "ended_by": None, "ended_reason": None,
            "last_message_at": None,
        }
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=row)

        with patch("chatrelay.infra.pg_conversation_repo_async.safe_db_conn", _fake_conn_ctx(conn)):
            found = await AsyncPostgresConversationRepository().find_ongoing("t", "a", "155")

        assert found.turns == [{"role": "agent", "content": "hi"}]
        assert found.dynamic_variables == {}
        assert found.message_count == 1


class TestPostgresCache:
    @pytest.mark.asyncio
    async def test_set_if_absent_taken(self):
        from chatrelay.infra.pg_cache_async import AsyncPostgresCache

        conn = MagicMock()
        conn.fetchval = AsyncMock(return_value="k")
        with patch("chatrelay.infra.pg_cache_async.safe_db_conn", _fake_conn_ctx(conn)):
            assert await AsyncPostgresCache().set_if_absent("k", "1", 10) is True

    @pytest.mark.asyncio
    async def test_set_if_absent_held(self):
        from chatrelay.infra.pg_cache_async import AsyncPostgresCache

        conn = MagicMock()
        conn.fetchval = AsyncMock(return_value=None)
        with patch("chatrelay.infra.pg_cache_async.safe_db_conn", _fake_conn_ctx(conn)):
            assert await AsyncPostgresCache().set_if_absent("k", "1", 10) is False

    @pytest.mark.asyncio
    async def test_purge_expired(self):
        from chatrelay.infra.pg_cache_async import AsyncPostgresCache

        conn = MagicMock()
        conn.execute = AsyncMock(return_value="DELETE 4")
        with patch("chatrelay.infra.pg_cache_async.safe_db_conn", _fake_conn_ctx(conn)):
            assert await AsyncPostgresCache().purge_expired() == 4


# ============================================================================
# Metrics
# ============================================================================

class TestMetrics:
    def test_metrics_counter_increment(self):
        from chatrelay.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        collector.inc_counter("test_counter", 1)
        collector.inc_counter("test_counter", 2)

        assert collector.get_metrics()["counters"]["test_counter"] == 3

    def test_metrics_histogram_observe(self):
        from chatrelay.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        for value in (0.1, 0.2, 0.5):
            collector.observe_histogram("test_histogram", value)

        stats = collector.get_metrics()["histograms"]["test_histogram"]
        assert stats["count"] == 3
        assert stats["min"] == 0.1
        assert stats["max"] == 0.5

    def test_metrics_with_labels(self):
        from chatrelay.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        collector.inc_counter("relayed", 1, {"tenant_id": "a"})
        collector.inc_counter("relayed", 2, {"tenant_id": "b"})

        counters = collector.get_metrics()["counters"]
        assert counters["relayed{tenant_id=a}"] == 1
        assert counters["relayed{tenant_id=b}"] == 2

    def test_app_metrics_use_global_collector(self):
        from chatrelay.infra.metrics import AppMetrics, get_metrics_collector

        before = get_metrics_collector().get_metrics()["counters"].get("inbound_duplicates_total", 0)
        AppMetrics.duplicate_dropped()
        after = get_metrics_collector().get_metrics()["counters"]["inbound_duplicates_total"]
        assert after == before + 1

    def test_backend_timer_records_histogram(self):
        from chatrelay.infra.metrics import AppMetrics, get_metrics_collector

        with AppMetrics.track_backend_time("unit_test"):
            pass

        histograms = get_metrics_collector().get_metrics()["histograms"]
        assert histograms["agent_backend_seconds{operation=unit_test}"]["count"] >= 1


# ============================================================================
# Rate limiter
# ============================================================================

class TestRateLimiter:
    def test_rate_limiter_allows_under_limit(self):
        from chatrelay.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=10, window_seconds=60)

        allowed, retry_after = limiter.is_allowed("test_key")
        assert allowed is True
        assert retry_after is None

    def test_rate_limiter_blocks_over_limit(self):
        from chatrelay.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=2, window_seconds=60)
        limiter.is_allowed("test_key")
        limiter.is_allowed("test_key")

        allowed, retry_after = limiter.is_allowed("test_key")
        assert allowed is False
        assert retry_after > 0

    def test_rate_limiter_keys_are_independent(self):
        from chatrelay.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60)
        assert limiter.is_allowed("tenant_a:1.2.3.4")[0] is True
        assert limiter.is_allowed("tenant_b:1.2.3.4")[0] is True
        assert limiter.is_allowed("tenant_a:1.2.3.4")[0] is False

    def test_cleanup_removes_idle_keys(self):
        from chatrelay.infra.rate_limiter import InMemoryRateLimiter

        limiter = InMemoryRateLimiter(max_requests=5, window_seconds=60)
        limiter.is_allowed("idle")
        with patch("chatrelay.infra.rate_limiter.time.time", return_value=10**10):
            assert limiter.cleanup(max_age_seconds=60) == 1


# ============================================================================
# Configuration
# ============================================================================

class TestConfig:
    def test_defaults(self):
        from chatrelay.config import Settings
        s = Settings(_env_file=None)
        assert s.init_timeout_seconds == 120.0
        assert s.qr_timeout_seconds == 30.0
        assert s.dedup_ttl_seconds == 86400
        assert s.conversation_lock_ttl_seconds == 10
        assert s.cache_backend == "postgres"

    def test_database_dsn_from_parts(self):
        from chatrelay.config import Settings
        s = Settings(database_url=None, pguser="u", pgpassword="p", pghost="db", pgport=5433, pgdatabase="relay", _env_file=None)
        assert s.database_dsn == "postgresql://u:p@db:5433/relay"

    def test_database_url_wins(self):
        from chatrelay.config import Settings
        s = Settings(database_url="postgresql://x/y", _env_file=None)
        assert s.database_dsn == "postgresql://x/y"

    def test_invalid_cache_backend_rejected(self):
        from chatrelay.config import Settings
        from pydantic import ValidationError
        with pytest.raises(ValidationError):
            Settings(cache_backend="redis", _env_file=None)

    def test_production_requires_secrets(self):
        from chatrelay.config import Settings, validate_or_warn
        s = Settings(app_env="prod", admin_token=None, agent_backend_api_key=None, _env_file=None)
        with pytest.raises(RuntimeError, match="admin_token"):
            validate_or_warn(s)

    def test_risky_config_warnings(self):
        from chatrelay.config import Settings, warn_on_risky_config
        s = Settings(cache_backend="memory", admin_token=None, _env_file=None)
        warnings = warn_on_risky_config(s)
        assert any("cache_backend=memory" in w for w in warnings)
        assert any("admin_token" in w for w in warnings)


# ============================================================================
# Logging / activity
# ============================================================================

class TestLogging:
    def test_mask_contact(self):
        from chatrelay.infra.logging_config import mask_contact
        assert mask_contact("+15551234567") == "+155****67"
        assert mask_contact("123") == "***"

    def test_json_formatter_masks_contact(self):
        from chatrelay.infra.logging_config import JSONFormatter

        record = logging.LogRecord("t", logging.INFO, __file__, 1, "hello", None, None)
        record.contact = "15557654321"
        record.tenant_id = "tenant_a"

        data = json.loads(JSONFormatter().format(record))

        assert data["contact"] == "1555****21"
        assert data["tenant_id"] == "tenant_a"
        assert data["message"] == "hello"

    def test_log_context_adds_fields(self):
        from chatrelay.infra.logging_config import LogContext

        logger = MagicMock()
        LogContext(logger, tenant_id="t", agent_id="a").info("hi")

        _, kwargs = logger.log.call_args
        assert kwargs["extra"] == {"tenant_id": "t", "agent_id": "a"}


class TestActivityLog:
    def test_event_shape(self):
        from chatrelay.infra.activity_log import activity_event

        event = activity_event("channel.connected", tenant_id="t", agent_id="a", extra={"phone_number": "1"})
        assert event == {
            "event_type": "channel.connected",
            "tenant_id": "t",
            "agent_id": "a",
            "actor": "",
            "detail": "",
            "phone_number": "1",
        }

    def test_sink_writes_to_activity_logger(self):
        from chatrelay.infra.activity_log import LoggingActivitySink

        logger = MagicMock()
        LoggingActivitySink(logger).record({"event_type": "x", "tenant_id": "t", "agent_id": "a"})

        logger.info.assert_called_once()
        assert "ACTIVITY: x" in logger.info.call_args.args[0]

    def test_sink_never_raises(self):
        from chatrelay.infra.activity_log import LoggingActivitySink

        logger = MagicMock()
        logger.info.side_effect = RuntimeError("handler broken")
        LoggingActivitySink(logger).record({"event_type": "x"})
