# app/infra/pg_job_store_async.py
"""
Async PostgreSQL job store (asyncpg).

Each job row carries the full document (``doc`` JSONB) plus the columns
used for filtering and ordering.  Writes are compare-and-set on
``version``:

    UPDATE jobs SET ... WHERE id = $1 AND version = $2

Zero rows updated means a concurrent writer won; the caller gets
``StaleWriteError`` and re-reads.
"""
from __future__ import annotations

import json
import dataclasses
from typing import Any, AsyncIterator

from app.core.dispatch.domain import Job, job_from_doc, job_to_doc
from app.core.dispatch.errors import NotFoundError, StaleWriteError
from app.core.dispatch.ports import JobQuery
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.pg_listen_async import JOB_CHANNEL, pg_change_feed

logger = get_logger(__name__)


def _row_to_job(row) -> Job:
    """Convert an asyncpg Record to a Job; the row's version is authoritative."""
    doc = row["doc"]
    if isinstance(doc, str):
        doc = json.loads(doc)
    doc = dict(doc)
    doc["version"] = row["version"]
    return job_from_doc(doc)


def build_query_sql(query: JobQuery) -> tuple[str, list[Any]]:
    """Translate a ``JobQuery`` into parameterized SQL."""
    clauses: list[str] = []
    args: list[Any] = []

    def param(value: Any) -> str:
        args.append(value)
        return f"${len(args)}"

    if not query.include_deleted:
        clauses.append("NOT deleted")
    if query.creator_id is not None:
        clauses.append(f"creator_id = {param(query.creator_id)}")
    if query.agent_id is not None:
        clauses.append(f"agent_id = {param(query.agent_id)}")
    if query.statuses:
        clauses.append(f"status = ANY({param([s.value for s in query.statuses])}::text[])")
    if query.states:
        clauses.append(f"state = ANY({param([s.value for s in query.states])}::text[])")

    direction = "DESC" if query.newest_first else "ASC"
    sql = "SELECT doc, version FROM jobs"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += f" ORDER BY created_at {direction}, id {direction}"
    if query.limit is not None:
        sql += f" LIMIT {param(query.limit)}"
    return sql, args


def notification_is_relevant(query: JobQuery, payload: dict[str, Any]) -> bool:
    """Cheap pre-filter on the NOTIFY payload before re-running ``query``."""
    if query.creator_id is not None and payload.get("creator_id") != query.creator_id:
        return False
    if query.agent_id is not None and query.agent_id not in (
        payload.get("agent_id"), payload.get("previous_agent_id")
    ):
        return False
    return True


class AsyncPostgresJobStore:
    """Jobs table access with optimistic concurrency and LISTEN/NOTIFY feeds."""

    async def insert(self, job: Job) -> Job:
        job = dataclasses.replace(job, version=0)
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO jobs (id, creator_id, agent_id, status, state, deleted,
                                  created_at, updated_at, version, doc)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 0, $9)
                """,
                job.id,
                job.creator_id,
                job.agent_id,
                job.status.value,
                job.state.value,
                job.deleted,
                job.created_at,
                job.updated_at,
                job_to_doc(job),
            )
        logger.debug(f"Job inserted: id={job.id}", extra={"job_id": job.id})
        return job

    @retry_on_transient_error(max_retries=3)
    async def get(self, job_id: str) -> Job | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT doc, version FROM jobs WHERE id = $1", job_id)
            return _row_to_job(row) if row else None

    async def replace(self, job: Job, expected_version: int) -> Job:
        stored = dataclasses.replace(job, version=expected_version + 1)
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET agent_id = $3, status = $4, state = $5, deleted = $6,
                    updated_at = $7, version = $8, doc = $9
                WHERE id = $1 AND version = $2
                RETURNING version
                """,
                job.id,
                expected_version,
                stored.agent_id,
                stored.status.value,
                stored.state.value,
                stored.deleted,
                stored.updated_at,
                stored.version,
                job_to_doc(stored),
            )
            if row is None:
                exists = await conn.fetchval("SELECT 1 FROM jobs WHERE id = $1", job.id)
                if not exists:
                    raise NotFoundError(f"job {job.id} not found")
                raise StaleWriteError(job.id, expected_version)
        return stored

    @retry_on_transient_error(max_retries=3)
    async def query(self, query: JobQuery) -> list[Job]:
        sql, args = build_query_sql(query)
        async with safe_db_conn() as conn:
            rows = await conn.fetch(sql, *args)
            return [_row_to_job(row) for row in rows]

    def watch(self, query: JobQuery) -> AsyncIterator[list[Job]]:
        return pg_change_feed(
            JOB_CHANNEL,
            lambda: self.query(query),
            lambda payload: notification_is_relevant(query, payload),
        )

    def watch_one(self, job_id: str) -> AsyncIterator[Job | None]:
        return pg_change_feed(
            JOB_CHANNEL,
            lambda: self.get(job_id),
            lambda payload: payload.get("id") == job_id,
        )
