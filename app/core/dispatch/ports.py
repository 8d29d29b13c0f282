# app/core/dispatch/ports.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Iterable, Protocol

from app.core.dispatch.domain import Agent, AgentActivity, Job, SenderProfile
from app.core.dispatch.geo import Coordinates
from app.core.dispatch.lifecycle import JobState, JobStatus
from app.core.dispatch.notifications import NotificationRequest


# ============================================================================
# QUERIES
# ============================================================================

@dataclass(frozen=True)
class JobQuery:
    """
    Exact-match filters + order by ``created_at`` + optional limit.

    Deleted jobs are excluded unless ``include_deleted`` is set.
    """
    creator_id: str | None = None
    agent_id: str | None = None
    statuses: tuple[JobStatus, ...] = ()
    states: tuple[JobState, ...] = ()
    include_deleted: bool = False
    newest_first: bool = True
    limit: int | None = None

    def matches(self, job: Job) -> bool:
        if not self.include_deleted and job.deleted:
            return False
        if self.creator_id is not None and job.creator_id != self.creator_id:
            return False
        if self.agent_id is not None and job.agent_id != self.agent_id:
            return False
        if self.statuses and job.status not in self.statuses:
            return False
        if self.states and job.state not in self.states:
            return False
        return True

    def apply(self, jobs: Iterable[Job]) -> list[Job]:
        selected = sorted(
            (j for j in jobs if self.matches(j)),
            key=lambda j: (j.created_at, j.id),
            reverse=self.newest_first,
        )
        return selected[: self.limit] if self.limit is not None else selected

    def signature(self) -> str:
        """Stable text form, used in subscription keys."""
        parts = [
            f"status={','.join(s.value for s in self.statuses)}" if self.statuses else "",
            f"state={','.join(s.value for s in self.states)}" if self.states else "",
            "deleted" if self.include_deleted else "",
            "asc" if not self.newest_first else "",
            f"limit={self.limit}" if self.limit is not None else "",
        ]
        return ";".join(p for p in parts if p) or "all"


OPEN_JOBS_QUERY = JobQuery(statuses=(JobStatus.AWAITING_AGENT,), states=(JobState.PREPAID,))


@dataclass(frozen=True)
class CheckoutSession:
    """Checkout request handed to the payment collaborator."""
    id: str
    job_id: str
    amount_minor: int
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)
    client_secret: str | None = None
    error: str | None = None
    created_at: datetime | None = None

    @property
    def is_ready(self) -> bool:
        return self.client_secret is not None or self.error is not None


# ============================================================================
# ASYNC PROTOCOLS
# ============================================================================

class AsyncJobStore(Protocol):
    async def insert(self, job: Job) -> Job: ...
    async def get(self, job_id: str) -> Job | None: ...

    async def replace(self, job: Job, expected_version: int) -> Job:
        """
        Single-document atomic write.

        Succeeds only if the stored version still equals ``expected_version``;
        returns the job with ``version = expected_version + 1``.
        Raises ``StaleWriteError`` otherwise.
        """
        ...

    async def query(self, query: JobQuery) -> list[Job]: ...

    def watch(self, query: JobQuery) -> AsyncIterator[list[Job]]:
        """Current result set first, then a fresh result set after every relevant change."""
        ...

    def watch_one(self, job_id: str) -> AsyncIterator[Job | None]: ...


class AsyncAgentStore(Protocol):
    async def get(self, agent_id: str) -> Agent | None: ...
    async def get_many(self, agent_ids: Iterable[str]) -> dict[str, Agent]: ...
    async def upsert(self, agent: Agent) -> Agent: ...
    async def update_location(self, agent_id: str, location: Coordinates, at: datetime) -> Agent | None: ...
    async def set_activity(self, agent_id: str, activity: AgentActivity) -> Agent | None: ...

    async def record_outcome(self, agent_id: str, delivered: bool, earnings: Decimal) -> None:
        """Atomic counter increments: completed + earnings, or cancelled."""
        ...


class AsyncProfileDirectory(Protocol):
    async def get_profile(self, user_id: str) -> SenderProfile | None: ...


class AsyncCheckoutStore(Protocol):
    async def create_session(self, session: CheckoutSession) -> CheckoutSession: ...
    async def get_session(self, session_id: str) -> CheckoutSession | None: ...
    def watch_session(self, session_id: str) -> AsyncIterator[CheckoutSession | None]: ...


class AsyncNotificationQueue(Protocol):
    async def enqueue(self, request: NotificationRequest) -> None: ...

    async def enqueue_reminder(self, request: NotificationRequest) -> bool:
        """
        Enqueue the reminder for ``request.job_id`` at most once.

        True  => enqueued now
        False => a reminder for this job was already sent

        The claim and the enqueue succeed or fail together.
        """
        ...
