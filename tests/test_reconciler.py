# tests/test_reconciler.py
"""Tests for chatrelay/core/reconciler.py: status without a live connector."""
from __future__ import annotations

import pytest

from chatrelay.core.domain import ConnectionRecord
from chatrelay.core.reconciler import ConnectionStatusReconciler, STALE_NOTE


@pytest.fixture
def reconciler(connections) -> ConnectionStatusReconciler:
    return ConnectionStatusReconciler(connections)


class TestReconcile:
    @pytest.mark.asyncio
    async def test_no_record(self, reconciler, session_key):
        status = await reconciler.reconcile(session_key)
        assert status.status == "not_initialized"
        assert status.is_connected is False

    @pytest.mark.asyncio
    async def test_connected_record_is_stale(self, reconciler, connections, session_key):
        await connections.upsert(ConnectionRecord(
            tenant_id="tenant_a", agent_id="agent_1", status="connected",
            phone_number="15551234567", platform="android", display_name="Acme",
        ))

        status = await reconciler.reconcile(session_key)

        assert status.is_connected is False
        assert status.status == "stale"
        assert status.phone_number == "15551234567"
        assert status.note == STALE_NOTE

    @pytest.mark.asyncio
    async def test_pending_record(self, reconciler, connections, session_key):
        await connections.upsert(ConnectionRecord(tenant_id="tenant_a", agent_id="agent_1", status="pending"))
        status = await reconciler.reconcile(session_key)
        assert status.status == "pending"
        assert status.is_connected is False

    @pytest.mark.asyncio
    async def test_disconnected_record(self, reconciler, connections, session_key):
        await connections.upsert(ConnectionRecord(tenant_id="tenant_a", agent_id="agent_1", status="disconnected"))
        status = await reconciler.reconcile(session_key)
        assert status.status == "disconnected"

    @pytest.mark.asyncio
    async def test_lookup_failure_reports_not_initialized(self, reconciler, connections, session_key):
        connections.fail_with = RuntimeError("db down")
        status = await reconciler.reconcile(session_key)
        assert status.status == "not_initialized"
