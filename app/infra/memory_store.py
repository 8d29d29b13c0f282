# app/infra/memory_store.py
"""
In-memory implementations of the dispatch ports.

Used by the test suite and by ``STORAGE_BACKEND=memory`` for local runs.
Semantics match the PostgreSQL stores: compare-and-set on ``version``,
change feeds that yield the current snapshot first and a fresh snapshot
after every relevant write, at-most-once reminder claims.

Nothing here is shared between processes.
"""
from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Iterable

from app.core.dispatch.domain import Agent, AgentActivity, Job, SenderProfile
from app.core.dispatch.errors import NotFoundError, StaleWriteError, ValidationError
from app.core.dispatch.geo import Coordinates
from app.core.dispatch.notifications import NotificationRequest
from app.core.dispatch.ports import CheckoutSession, JobQuery
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_DISCONNECTED = object()


# ============================================================================
# CHANGE BROADCAST
# ============================================================================

class _ChangeHub:
    """Fan-out of change events to every open feed."""

    def __init__(self) -> None:
        self._queues: set[asyncio.Queue] = set()

    def __len__(self) -> int:
        return len(self._queues)

    def publish(self, event: Any) -> None:
        for queue in list(self._queues):
            queue.put_nowait(event)

    async def feed(
        self,
        fetch: Callable[[], Any],
        relevant: Callable[[Any], bool] | None = None,
    ) -> AsyncIterator[Any]:
        """Snapshot first, then one snapshot per burst of relevant events."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.add(queue)
        try:
            yield fetch()
            while True:
                events = [await queue.get()]
                while not queue.empty():
                    events.append(queue.get_nowait())
                if any(e is _DISCONNECTED for e in events):
                    raise ConnectionError("change feed disconnected")
                if relevant is None or any(relevant(e) for e in events):
                    yield fetch()
        finally:
            self._queues.discard(queue)

    def disconnect(self) -> None:
        """End every open feed with ``ConnectionError``."""
        self.publish(_DISCONNECTED)


# ============================================================================
# JOBS
# ============================================================================

class InMemoryJobStore:

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._hub = _ChangeHub()

    def __len__(self) -> int:
        return len(self._jobs)

    @property
    def open_feeds(self) -> int:
        return len(self._hub)

    def disconnect_feeds(self) -> None:
        self._hub.disconnect()

    def _publish(self, before: Job | None, after: Job) -> None:
        self._hub.publish({
            "id": after.id,
            "creator_id": after.creator_id,
            "agent_id": after.agent_id,
            "previous_agent_id": before.agent_id if before else None,
        })

    async def insert(self, job: Job) -> Job:
        if job.id in self._jobs:
            raise ValidationError(f"job {job.id} already exists")
        stored = replace(job, version=0)
        self._jobs[job.id] = stored
        self._publish(None, stored)
        return stored

    async def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    async def replace(self, job: Job, expected_version: int) -> Job:
        current = self._jobs.get(job.id)
        if current is None:
            raise NotFoundError(f"job {job.id} not found")
        if current.version != expected_version:
            raise StaleWriteError(job.id, expected_version)
        stored = replace(job, version=expected_version + 1)
        self._jobs[job.id] = stored
        self._publish(current, stored)
        return stored

    async def query(self, query: JobQuery) -> list[Job]:
        return query.apply(self._jobs.values())

    def watch(self, query: JobQuery) -> AsyncIterator[list[Job]]:
        def relevant(event: dict[str, Any]) -> bool:
            if query.creator_id is not None and event["creator_id"] != query.creator_id:
                return False
            if query.agent_id is not None and query.agent_id not in (
                event["agent_id"], event["previous_agent_id"]
            ):
                return False
            return True

        return self._hub.feed(lambda: query.apply(self._jobs.values()), relevant)

    def watch_one(self, job_id: str) -> AsyncIterator[Job | None]:
        return self._hub.feed(lambda: self._jobs.get(job_id), lambda event: event["id"] == job_id)


# ============================================================================
# AGENTS / PROFILES
# ============================================================================

class InMemoryAgentStore:

    def __init__(self, agents: Iterable[Agent] = ()) -> None:
        self._agents: dict[str, Agent] = {a.id: a for a in agents}

    async def get(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    async def get_many(self, agent_ids: Iterable[str]) -> dict[str, Agent]:
        return {i: self._agents[i] for i in agent_ids if i in self._agents}

    async def upsert(self, agent: Agent) -> Agent:
        existing = self._agents.get(agent.id)
        if existing is not None:
            # Counters and live location are owned by the store
            agent = replace(
                agent,
                current_location=existing.current_location,
                last_location_update=existing.last_location_update,
                completed_deliveries=existing.completed_deliveries,
                cancelled_deliveries=existing.cancelled_deliveries,
                total_earnings=existing.total_earnings,
            )
        self._agents[agent.id] = agent
        return agent

    async def update_location(self, agent_id: str, location: Coordinates, at: datetime) -> Agent | None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        agent = self._agents[agent_id] = replace(agent, current_location=location, last_location_update=at)
        return agent

    async def set_activity(self, agent_id: str, activity: AgentActivity) -> Agent | None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        agent = self._agents[agent_id] = replace(agent, active_status=activity)
        return agent

    async def record_outcome(self, agent_id: str, delivered: bool, earnings: Decimal) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            logger.warning(f"record_outcome for unknown agent {agent_id}", extra={"agent_id": agent_id})
            return
        if delivered:
            agent = replace(
                agent,
                completed_deliveries=agent.completed_deliveries + 1,
                total_earnings=agent.total_earnings + earnings,
            )
        else:
            agent = replace(agent, cancelled_deliveries=agent.cancelled_deliveries + 1)
        self._agents[agent_id] = agent


class InMemoryProfileDirectory:

    def __init__(self, profiles: Iterable[SenderProfile] = ()) -> None:
        self._profiles: dict[str, SenderProfile] = {p.user_id: p for p in profiles}

    def add(self, profile: SenderProfile) -> None:
        self._profiles[profile.user_id] = profile

    async def get_profile(self, user_id: str) -> SenderProfile | None:
        return self._profiles.get(user_id)


# ============================================================================
# COLLABORATOR OUTBOXES
# ============================================================================

class InMemoryCheckoutStore:
    """
    Checkout session outbox.

    With ``auto_approve`` every new session is answered immediately with
    a client secret, standing in for the payment collaborator on local runs.
    """

    def __init__(self, *, auto_approve: bool = False) -> None:
        self.auto_approve = auto_approve
        self.sessions: dict[str, CheckoutSession] = {}
        self._hub = _ChangeHub()

    async def create_session(self, session: CheckoutSession) -> CheckoutSession:
        session = replace(session, created_at=session.created_at or datetime.now(timezone.utc))
        if self.auto_approve:
            session = replace(session, client_secret=f"{session.id}_secret")
        self.sessions[session.id] = session
        self._hub.publish(session.id)
        return session

    async def get_session(self, session_id: str) -> CheckoutSession | None:
        return self.sessions.get(session_id)

    async def complete_session(
        self, session_id: str, *, client_secret: str | None = None, error: str | None = None
    ) -> CheckoutSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"checkout session {session_id} not found")
        session = self.sessions[session_id] = replace(session, client_secret=client_secret, error=error)
        self._hub.publish(session_id)
        return session

    def watch_session(self, session_id: str) -> AsyncIterator[CheckoutSession | None]:
        return self._hub.feed(lambda: self.sessions.get(session_id), lambda event: event == session_id)


class InMemoryNotificationQueue:

    def __init__(self) -> None:
        self.sent: list[NotificationRequest] = []
        self._claimed: set[str] = set()

    async def enqueue(self, request: NotificationRequest) -> None:
        self.sent.append(request)

    async def enqueue_reminder(self, request: NotificationRequest) -> bool:
        if request.job_id in self._claimed:
            return False
        await self.enqueue(request)
        self._claimed.add(request.job_id)
        return True

    def templates(self) -> list[str]:
        return [r.template_name for r in self.sent]
