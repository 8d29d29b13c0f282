# tests/test_pg_stores.py
"""
Tests for the asyncpg stores with a mocked connection:
- job store SQL building and compare-and-set
- agent store and profile directory
- checkout / notification outboxes
"""
from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from app.core.dispatch.domain import (
    AgentActivity,
    ApprovalStatus,
    IndividualProfile,
    ProfessionalProfile,
    job_to_doc,
)
from app.core.dispatch.errors import NotFoundError, StaleWriteError
from app.core.dispatch.lifecycle import JobState, JobStatus
from app.core.dispatch.notifications import NotificationRequest
from app.core.dispatch.ports import OPEN_JOBS_QUERY, CheckoutSession, JobQuery
from app.infra.pg_agent_store_async import (
    AsyncPostgresAgentStore,
    AsyncPostgresProfileDirectory,
    _row_to_agent,
    _row_to_profile,
)
from app.infra.pg_job_store_async import (
    AsyncPostgresJobStore,
    _row_to_job,
    build_query_sql,
    notification_is_relevant,
)
from app.infra.pg_listen_async import pg_change_feed
from app.infra.pg_outbox_async import (
    AsyncPostgresCheckoutStore,
    AsyncPostgresNotificationQueue,
    _row_to_session,
)
from conftest import NOW, make_agent, make_job


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _patch_conn(module: str, mock_conn):
    """Patch ``safe_db_conn`` in ``module`` to yield ``mock_conn``."""
    ctx = patch(f"{module}.safe_db_conn")
    mock_ctx = ctx.start()
    mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
    mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)
    return ctx


def _agent_row(overrides: dict | None = None) -> dict:
    row = {
        "id": "agent-1",
        "first_name": "Chloe",
        "last_name": "Durand",
        "home_lat": 48.86,
        "home_lng": 2.34,
        "active_status": "available",
        "approval_status": "approved",
        "current_lat": None,
        "current_lng": None,
        "last_location_update": None,
        "delivery_range_km": 10.0,
        "rating": 4.8,
        "completed_deliveries": 3,
        "cancelled_deliveries": 1,
        "total_earnings": Decimal("76.50"),
    }
    if overrides:
        row.update(overrides)
    return row


def _session_row(overrides: dict | None = None) -> dict:
    row = {
        "id": "cs_1",
        "job_id": "job-1",
        "amount_minor": 2550,
        "currency": "eur",
        "metadata": {"job_id": "job-1"},
        "client_secret": None,
        "error": None,
        "created_at": NOW,
    }
    if overrides:
        row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Job store
# ---------------------------------------------------------------------------

class TestBuildQuerySql:
    def test_default_query(self):
        sql, args = build_query_sql(JobQuery())
        assert sql == "SELECT doc, version FROM jobs WHERE NOT deleted ORDER BY created_at DESC, id DESC"
        assert args == []

    def test_open_jobs_query(self):
        sql, args = build_query_sql(OPEN_JOBS_QUERY)
        assert "status = ANY($1::text[])" in sql
        assert "state = ANY($2::text[])" in sql
        assert args == [["awaiting_agent"], ["prepaid"]]

    def test_all_filters(self):
        query = JobQuery(
            creator_id="c1",
            agent_id="a1",
            statuses=(JobStatus.PICKED_UP, JobStatus.RESCHEDULED),
            include_deleted=True,
            newest_first=False,
            limit=5,
        )
        sql, args = build_query_sql(query)
        assert "NOT deleted" not in sql
        assert "creator_id = $1" in sql
        assert "agent_id = $2" in sql
        assert "ORDER BY created_at ASC, id ASC" in sql
        assert sql.endswith("LIMIT $4")
        assert args == ["c1", "a1", ["picked_up", "rescheduled"], 5]


class TestNotificationRelevance:
    def test_creator_filter(self):
        query = JobQuery(creator_id="c1")
        assert notification_is_relevant(query, {"creator_id": "c1"}) is True
        assert notification_is_relevant(query, {"creator_id": "c2"}) is False

    def test_agent_filter_includes_previous_agent(self):
        query = JobQuery(agent_id="a1")
        assert notification_is_relevant(query, {"agent_id": "a1"}) is True
        assert notification_is_relevant(query, {"agent_id": None, "previous_agent_id": "a1"}) is True
        assert notification_is_relevant(query, {"agent_id": "a2"}) is False

    def test_unfiltered_query_wants_everything(self):
        assert notification_is_relevant(OPEN_JOBS_QUERY, {}) is True


class TestRowToJob:
    def test_row_version_is_authoritative(self):
        job = make_job()
        row = {"doc": job_to_doc(job), "version": 7}
        assert _row_to_job(row).version == 7

    def test_text_doc_is_decoded(self):
        job = make_job(state=JobState.PREPAID)
        row = {"doc": json.dumps(job_to_doc(job)), "version": 1}
        parsed = _row_to_job(row)
        assert parsed.state == JobState.PREPAID
        assert parsed.price == Decimal("25.50")
        assert parsed.time_window == job.time_window


class TestAsyncPostgresJobStore:
    @pytest.mark.asyncio
    async def test_insert_writes_doc(self):
        mock_conn = AsyncMock()
        ctx = _patch_conn("app.infra.pg_job_store_async", mock_conn)
        try:
            stored = await AsyncPostgresJobStore().insert(make_job(version=3))
        finally:
            ctx.stop()

        assert stored.version == 0
        sql = mock_conn.execute.call_args[0][0]
        assert "INSERT INTO jobs" in sql
        doc = mock_conn.execute.call_args[0][9]
        assert doc["id"] == "job-1"
        assert doc["status"] == "awaiting_agent"

    @pytest.mark.asyncio
    async def test_replace_success(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value={"version": 5})
        ctx = _patch_conn("app.infra.pg_job_store_async", mock_conn)
        try:
            stored = await AsyncPostgresJobStore().replace(make_job(state=JobState.PREPAID), expected_version=4)
        finally:
            ctx.stop()

        assert stored.version == 5
        sql, job_id, expected = mock_conn.fetchrow.call_args[0][:3]
        assert "WHERE id = $1 AND version = $2" in sql
        assert (job_id, expected) == ("job-1", 4)

    @pytest.mark.asyncio
    async def test_replace_stale(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        mock_conn.fetchval = AsyncMock(return_value=1)
        ctx = _patch_conn("app.infra.pg_job_store_async", mock_conn)
        try:
            with pytest.raises(StaleWriteError):
                await AsyncPostgresJobStore().replace(make_job(), expected_version=0)
        finally:
            ctx.stop()

    @pytest.mark.asyncio
    async def test_replace_missing(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        mock_conn.fetchval = AsyncMock(return_value=None)
        ctx = _patch_conn("app.infra.pg_job_store_async", mock_conn)
        try:
            with pytest.raises(NotFoundError):
                await AsyncPostgresJobStore().replace(make_job(), expected_version=0)
        finally:
            ctx.stop()

    @pytest.mark.asyncio
    async def test_get_missing(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        ctx = _patch_conn("app.infra.pg_job_store_async", mock_conn)
        try:
            assert await AsyncPostgresJobStore().get("nope") is None
        finally:
            ctx.stop()

    @pytest.mark.asyncio
    async def test_query_maps_rows(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[
            {"doc": job_to_doc(make_job(id="a")), "version": 2},
            {"doc": job_to_doc(make_job(id="b")), "version": 0},
        ])
        ctx = _patch_conn("app.infra.pg_job_store_async", mock_conn)
        try:
            jobs = await AsyncPostgresJobStore().query(JobQuery(creator_id="creator-1"))
        finally:
            ctx.stop()

        assert [(j.id, j.version) for j in jobs] == [("a", 2), ("b", 0)]
        assert mock_conn.fetch.call_args[0][1] == "creator-1"


# ---------------------------------------------------------------------------
# Agents / profiles
# ---------------------------------------------------------------------------

class TestRowMapping:
    def test_row_to_agent(self):
        agent = _row_to_agent(_agent_row({"current_lat": 48.9, "current_lng": 2.3}))
        assert agent.approval_status is ApprovalStatus.APPROVED
        assert agent.active_status is AgentActivity.AVAILABLE
        assert agent.position.lat == 48.9
        assert agent.total_earnings == Decimal("76.50")

    def test_row_to_agent_without_location(self):
        agent = _row_to_agent(_agent_row())
        assert agent.current_location is None
        assert agent.position == agent.home_coordinates

    def test_row_to_profile(self):
        individual = _row_to_profile({
            "user_id": "u1", "kind": "individual", "first_name": "Alice", "last_name": None,
            "company_name": None, "contact_name": None,
        })
        assert individual == IndividualProfile("u1", "Alice", "")

        professional = _row_to_profile({
            "user_id": "u2", "kind": "professional", "first_name": None, "last_name": None,
            "company_name": "Acme", "contact_name": "Jean",
        })
        assert professional == ProfessionalProfile("u2", "Acme", "Jean")

    def test_unknown_profile_kind(self):
        assert _row_to_profile({"user_id": "u3", "kind": "robot"}) is None


class TestAsyncPostgresAgentStore:
    @pytest.mark.asyncio
    async def test_get_many_empty_skips_query(self):
        mock_conn = AsyncMock()
        ctx = _patch_conn("app.infra.pg_agent_store_async", mock_conn)
        try:
            assert await AsyncPostgresAgentStore().get_many([]) == {}
        finally:
            ctx.stop()
        mock_conn.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_many(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[_agent_row(), _agent_row({"id": "agent-2"})])
        ctx = _patch_conn("app.infra.pg_agent_store_async", mock_conn)
        try:
            agents = await AsyncPostgresAgentStore().get_many({"agent-1", "agent-2"})
        finally:
            ctx.stop()
        assert set(agents) == {"agent-1", "agent-2"}
        assert "ANY($1::text[])" in mock_conn.fetch.call_args[0][0]

    @pytest.mark.asyncio
    async def test_upsert(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=_agent_row())
        ctx = _patch_conn("app.infra.pg_agent_store_async", mock_conn)
        try:
            agent = await AsyncPostgresAgentStore().upsert(make_agent("agent-1"))
        finally:
            ctx.stop()
        assert agent.completed_deliveries == 3
        assert "ON CONFLICT (id) DO UPDATE" in mock_conn.fetchrow.call_args[0][0]

    @pytest.mark.asyncio
    async def test_set_activity_unknown_agent(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        ctx = _patch_conn("app.infra.pg_agent_store_async", mock_conn)
        try:
            assert await AsyncPostgresAgentStore().set_activity("ghost", AgentActivity.BUSY) is None
        finally:
            ctx.stop()

    @pytest.mark.asyncio
    async def test_record_delivered_outcome(self):
        mock_conn = AsyncMock()
        ctx = _patch_conn("app.infra.pg_agent_store_async", mock_conn)
        try:
            await AsyncPostgresAgentStore().record_outcome("agent-1", True, Decimal("25.50"))
        finally:
            ctx.stop()
        sql, agent_id, earnings = mock_conn.execute.call_args[0]
        assert "completed_deliveries = completed_deliveries + 1" in sql
        assert (agent_id, earnings) == ("agent-1", Decimal("25.50"))

    @pytest.mark.asyncio
    async def test_record_failed_outcome(self):
        mock_conn = AsyncMock()
        ctx = _patch_conn("app.infra.pg_agent_store_async", mock_conn)
        try:
            await AsyncPostgresAgentStore().record_outcome("agent-1", False, Decimal("0"))
        finally:
            ctx.stop()
        assert "cancelled_deliveries = cancelled_deliveries + 1" in mock_conn.execute.call_args[0][0]

    @pytest.mark.asyncio
    async def test_profile_directory(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value={
            "user_id": "u1", "kind": "individual", "first_name": "Alice", "last_name": "Martin",
            "company_name": None, "contact_name": None,
        })
        ctx = _patch_conn("app.infra.pg_agent_store_async", mock_conn)
        try:
            profile = await AsyncPostgresProfileDirectory().get_profile("u1")
        finally:
            ctx.stop()
        assert profile == IndividualProfile("u1", "Alice", "Martin")


# ---------------------------------------------------------------------------
# Outboxes
# ---------------------------------------------------------------------------

class TestOutboxes:
    def test_row_to_session_decodes_text_metadata(self):
        session = _row_to_session(_session_row({"metadata": '{"job_id": "job-1"}'}))
        assert session.metadata == {"job_id": "job-1"}
        assert session.is_ready is False

    @pytest.mark.asyncio
    async def test_create_session(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=_session_row())
        ctx = _patch_conn("app.infra.pg_outbox_async", mock_conn)
        try:
            session = await AsyncPostgresCheckoutStore().create_session(
                CheckoutSession(id="cs_1", job_id="job-1", amount_minor=2550, currency="eur")
            )
        finally:
            ctx.stop()
        assert session.created_at == NOW
        assert "INSERT INTO checkout_sessions" in mock_conn.fetchrow.call_args[0][0]

    @pytest.mark.asyncio
    async def test_complete_unknown_session(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        ctx = _patch_conn("app.infra.pg_outbox_async", mock_conn)
        try:
            with pytest.raises(NotFoundError):
                await AsyncPostgresCheckoutStore().complete_session("cs_x", error="declined")
        finally:
            ctx.stop()

    @pytest.mark.asyncio
    async def test_enqueue_notification(self):
        mock_conn = AsyncMock()
        ctx = _patch_conn("app.infra.pg_outbox_async", mock_conn)
        try:
            await AsyncPostgresNotificationQueue().enqueue(
                NotificationRequest("u1", "agent_assigned", {"user": {"firstName": "Alice"}}, job_id="job-1")
            )
        finally:
            ctx.stop()
        args = mock_conn.execute.call_args[0]
        assert "INSERT INTO notification_requests" in args[0]
        assert args[1:] == ("u1", "agent_assigned", {"user": {"firstName": "Alice"}}, "high", "job-1")

    @pytest.mark.asyncio
    async def test_enqueue_reminder_claims_and_enqueues_in_one_transaction(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value={"job_id": "job-1"})
        reminder = NotificationRequest("u1", "delivery_reminder", {}, priority="normal", job_id="job-1")

        with patch("app.infra.pg_outbox_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)
            assert await AsyncPostgresNotificationQueue().enqueue_reminder(reminder) is True

        mock_ctx.assert_called_once_with(autocommit=False)
        assert "ON CONFLICT (job_id) DO NOTHING" in mock_conn.fetchrow.call_args[0][0]
        args = mock_conn.execute.call_args[0]
        assert "INSERT INTO notification_requests" in args[0]
        assert args[1:] == ("u1", "delivery_reminder", {}, "normal", "job-1")

    @pytest.mark.asyncio
    async def test_enqueue_reminder_already_claimed(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        ctx = _patch_conn("app.infra.pg_outbox_async", mock_conn)
        try:
            reminder = NotificationRequest("u1", "delivery_reminder", job_id="job-1")
            assert await AsyncPostgresNotificationQueue().enqueue_reminder(reminder) is False
        finally:
            ctx.stop()
        mock_conn.execute.assert_not_called()


# ---------------------------------------------------------------------------
# LISTEN/NOTIFY change feed
# ---------------------------------------------------------------------------

def _listen_pool(conn):
    pool = MagicMock()
    pool.acquire = AsyncMock(return_value=conn)
    pool.release = AsyncMock()
    return pool


class TestChangeFeed:
    @pytest.mark.asyncio
    async def test_snapshot_then_release_on_close(self):
        conn = MagicMock()
        conn.add_listener = AsyncMock()
        conn.remove_listener = AsyncMock()
        pool = _listen_pool(conn)

        with patch("app.infra.pg_listen_async.get_pool", AsyncMock(return_value=pool)):
            feed = pg_change_feed("job_changes", AsyncMock(return_value=["snapshot"]))
            assert await feed.__anext__() == ["snapshot"]
            await feed.aclose()

        conn.add_listener.assert_awaited_once()
        conn.remove_listener.assert_awaited_once()
        pool.release.assert_awaited_once_with(conn)

    @pytest.mark.asyncio
    async def test_failed_listen_releases_connection(self):
        conn = MagicMock()
        conn.add_listener = AsyncMock(side_effect=asyncpg.InterfaceError("connection is closed"))
        conn.remove_listener = AsyncMock()
        pool = _listen_pool(conn)
        fetch = AsyncMock()

        with patch("app.infra.pg_listen_async.get_pool", AsyncMock(return_value=pool)):
            with pytest.raises(asyncpg.InterfaceError):
                await pg_change_feed("job_changes", fetch).__anext__()

        fetch.assert_not_called()
        conn.remove_listener.assert_not_called()
        conn.remove_termination_listener.assert_called_once()
        pool.release.assert_awaited_once_with(conn)

    @pytest.mark.asyncio
    async def test_failed_snapshot_releases_connection(self):
        conn = MagicMock()
        conn.add_listener = AsyncMock()
        conn.remove_listener = AsyncMock()
        pool = _listen_pool(conn)

        with patch("app.infra.pg_listen_async.get_pool", AsyncMock(return_value=pool)):
            with pytest.raises(ConnectionError):
                await pg_change_feed("job_changes", AsyncMock(side_effect=ConnectionError("reset"))).__anext__()

        conn.remove_listener.assert_awaited_once()
        pool.release.assert_awaited_once_with(conn)
