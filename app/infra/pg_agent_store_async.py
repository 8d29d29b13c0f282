# app/infra/pg_agent_store_async.py
"""
Async PostgreSQL agent store and sender-profile directory (asyncpg).

Agents are keyed by the owning user id and never deleted here.
Performance counters are incremented in SQL so concurrent deliveries by
the same agent cannot lose an update.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable

from app.core.dispatch.domain import (
    Agent,
    AgentActivity,
    ApprovalStatus,
    IndividualProfile,
    ProfessionalProfile,
    SenderProfile,
)
from app.core.dispatch.geo import Coordinates
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_AGENT_COLUMNS = """
    id, first_name, last_name, home_lat, home_lng, active_status, approval_status,
    current_lat, current_lng, last_location_update, delivery_range_km, rating,
    completed_deliveries, cancelled_deliveries, total_earnings
"""


def _row_to_agent(row) -> Agent:
    """Convert an asyncpg Record to an Agent."""
    current = None
    if row["current_lat"] is not None and row["current_lng"] is not None:
        current = Coordinates(row["current_lat"], row["current_lng"])
    return Agent(
        id=row["id"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        home_coordinates=Coordinates(row["home_lat"], row["home_lng"]),
        active_status=AgentActivity(row["active_status"]),
        approval_status=ApprovalStatus(row["approval_status"]),
        current_location=current,
        last_location_update=row["last_location_update"],
        delivery_range_km=row["delivery_range_km"],
        rating=row["rating"],
        completed_deliveries=row["completed_deliveries"],
        cancelled_deliveries=row["cancelled_deliveries"],
        total_earnings=Decimal(row["total_earnings"]),
    )


def _row_to_profile(row) -> SenderProfile | None:
    if row["kind"] == "individual":
        return IndividualProfile(row["user_id"], row["first_name"] or "", row["last_name"] or "")
    if row["kind"] == "professional":
        return ProfessionalProfile(row["user_id"], row["company_name"] or "", row["contact_name"] or "")
    logger.warning(f"Unknown profile kind {row['kind']!r} for user {row['user_id']}")
    return None


class AsyncPostgresAgentStore:

    @retry_on_transient_error(max_retries=3)
    async def get(self, agent_id: str) -> Agent | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(f"SELECT {_AGENT_COLUMNS} FROM agents WHERE id = $1", agent_id)
            return _row_to_agent(row) if row else None

    @retry_on_transient_error(max_retries=3)
    async def get_many(self, agent_ids: Iterable[str]) -> dict[str, Agent]:
        ids = list(agent_ids)
        if not ids:
            return {}
        async with safe_db_conn() as conn:
            rows = await conn.fetch(f"SELECT {_AGENT_COLUMNS} FROM agents WHERE id = ANY($1::text[])", ids)
            return {row["id"]: _row_to_agent(row) for row in rows}

    async def upsert(self, agent: Agent) -> Agent:
        current = agent.current_location
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO agents (id, first_name, last_name, home_lat, home_lng, active_status,
                                    approval_status, current_lat, current_lng, last_location_update,
                                    delivery_range_km, rating, completed_deliveries,
                                    cancelled_deliveries, total_earnings)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                ON CONFLICT (id) DO UPDATE SET
                    first_name = EXCLUDED.first_name,
                    last_name = EXCLUDED.last_name,
                    home_lat = EXCLUDED.home_lat,
                    home_lng = EXCLUDED.home_lng,
                    active_status = EXCLUDED.active_status,
                    approval_status = EXCLUDED.approval_status,
                    delivery_range_km = EXCLUDED.delivery_range_km,
                    rating = EXCLUDED.rating,
                    updated_at = now()
                RETURNING {_AGENT_COLUMNS}
                """,
                agent.id,
                agent.first_name,
                agent.last_name,
                agent.home_coordinates.lat,
                agent.home_coordinates.lng,
                agent.active_status.value,
                agent.approval_status.value,
                current.lat if current else None,
                current.lng if current else None,
                agent.last_location_update,
                agent.delivery_range_km,
                agent.rating,
                agent.completed_deliveries,
                agent.cancelled_deliveries,
                agent.total_earnings,
            )
            return _row_to_agent(row)

    async def update_location(self, agent_id: str, location: Coordinates, at: datetime) -> Agent | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE agents
                SET current_lat = $2, current_lng = $3, last_location_update = $4, updated_at = now()
                WHERE id = $1
                RETURNING {_AGENT_COLUMNS}
                """,
                agent_id,
                location.lat,
                location.lng,
                at,
            )
            return _row_to_agent(row) if row else None

    async def set_activity(self, agent_id: str, activity: AgentActivity) -> Agent | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"UPDATE agents SET active_status = $2, updated_at = now() WHERE id = $1 RETURNING {_AGENT_COLUMNS}",
                agent_id,
                activity.value,
            )
            return _row_to_agent(row) if row else None

    async def record_outcome(self, agent_id: str, delivered: bool, earnings: Decimal) -> None:
        async with safe_db_conn() as conn:
            if delivered:
                await conn.execute(
                    """
                    UPDATE agents
                    SET completed_deliveries = completed_deliveries + 1,
                        total_earnings = total_earnings + $2,
                        updated_at = now()
                    WHERE id = $1
                    """,
                    agent_id,
                    earnings,
                )
            else:
                await conn.execute(
                    "UPDATE agents SET cancelled_deliveries = cancelled_deliveries + 1, updated_at = now() "
                    "WHERE id = $1",
                    agent_id,
                )


class AsyncPostgresProfileDirectory:

    @retry_on_transient_error(max_retries=3)
    async def get_profile(self, user_id: str) -> SenderProfile | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT user_id, kind, first_name, last_name, company_name, contact_name "
                "FROM profiles WHERE user_id = $1",
                user_id,
            )
            return _row_to_profile(row) if row else None
