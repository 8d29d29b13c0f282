# app/core/dispatch/lifecycle.py
"""
Job lifecycle state machine.

A job's position is a ``Phase``: the pair (status, state).  Status is the
stage as seen by the assigned agent, state the stage as seen by billing.
The two only move together through the named transitions in
``TRANSITIONS``; nothing else may write them.

    (awaiting_agent, awaiting_prepayment)
        --confirm_payment-->  (awaiting_agent, prepaid)
        --accept-->           (agent_accepted, processing)
        --confirm_pickup-->   (picked_up, processing)
        --deliver-->          (delivered, completed)          terminal

    (agent_accepted | picked_up | rescheduled, processing)
        --reschedule-->       (rescheduled, processing)
        --fail-->             (failed, cancelled)             terminal

    (rescheduled, processing)
        --confirm_pickup-->   (picked_up, processing)

Soft deletion is allowed only while no agent is assigned.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, NamedTuple

from app.core.dispatch.errors import (
    AlreadyAcceptedError,
    IllegalTransitionError,
    TerminalJobError,
)
from app.infra.logging_config import get_logger

if TYPE_CHECKING:
    from app.core.dispatch.domain import Job

logger = get_logger(__name__)


# ============================================================================
# STATUS / STATE
# ============================================================================

class JobStatus(str, Enum):
    AWAITING_AGENT = "awaiting_agent"
    AGENT_ACCEPTED = "agent_accepted"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    FAILED = "failed"
    RESCHEDULED = "rescheduled"


class JobState(str, Enum):
    AWAITING_PREPAYMENT = "awaiting_prepayment"
    PREPAID = "prepaid"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Phase(NamedTuple):
    status: JobStatus
    state: JobState

    def __str__(self) -> str:
        return f"({self.status.value}, {self.state.value})"


INITIAL_PHASE = Phase(JobStatus.AWAITING_AGENT, JobState.AWAITING_PREPAYMENT)
PREPAID_PHASE = Phase(JobStatus.AWAITING_AGENT, JobState.PREPAID)
ACCEPTED_PHASE = Phase(JobStatus.AGENT_ACCEPTED, JobState.PROCESSING)
PICKED_UP_PHASE = Phase(JobStatus.PICKED_UP, JobState.PROCESSING)
RESCHEDULED_PHASE = Phase(JobStatus.RESCHEDULED, JobState.PROCESSING)
DELIVERED_PHASE = Phase(JobStatus.DELIVERED, JobState.COMPLETED)
FAILED_PHASE = Phase(JobStatus.FAILED, JobState.CANCELLED)

TERMINAL_PHASES: frozenset[Phase] = frozenset({DELIVERED_PHASE, FAILED_PHASE})


# ============================================================================
# TRANSITION TABLE
# ============================================================================

class Transition(str, Enum):
    CONFIRM_PAYMENT = "confirm_payment"
    ACCEPT = "accept"
    CONFIRM_PICKUP = "confirm_pickup"
    RESCHEDULE = "reschedule"
    FAIL = "fail"
    DELIVER = "deliver"


_IN_PROGRESS = frozenset({ACCEPTED_PHASE, PICKED_UP_PHASE, RESCHEDULED_PHASE})

# transition -> (allowed source phases, target phase)
TRANSITIONS: dict[Transition, tuple[frozenset[Phase], Phase]] = {
    Transition.CONFIRM_PAYMENT: (frozenset({INITIAL_PHASE}), PREPAID_PHASE),
    Transition.ACCEPT: (frozenset({PREPAID_PHASE}), ACCEPTED_PHASE),
    Transition.CONFIRM_PICKUP: (frozenset({ACCEPTED_PHASE, RESCHEDULED_PHASE}), PICKED_UP_PHASE),
    Transition.RESCHEDULE: (_IN_PROGRESS, RESCHEDULED_PHASE),
    Transition.FAIL: (_IN_PROGRESS, FAILED_PHASE),
    Transition.DELIVER: (frozenset({PICKED_UP_PHASE}), DELIVERED_PHASE),
}

REACHABLE_PHASES: frozenset[Phase] = frozenset(
    {INITIAL_PHASE} | {target for _, target in TRANSITIONS.values()}
)

# Phases in which a job may still be soft-deleted (no agent assigned)
DELETABLE_PHASES: frozenset[Phase] = frozenset({INITIAL_PHASE, PREPAID_PHASE})


def is_terminal(phase: Phase) -> bool:
    return phase in TERMINAL_PHASES


def transition_between(before: "Job", after: "Job") -> Transition | None:
    """The transition a committed write performed, or ``None`` for in-place edits."""
    if after.reschedule_count > before.reschedule_count:
        return Transition.FAIL if after.phase == FAILED_PHASE else Transition.RESCHEDULE
    if before.phase == after.phase:
        return None
    for transition, (sources, target) in TRANSITIONS.items():
        if before.phase in sources and after.phase == target:
            return transition
    return None


def target_phase(transition: Transition, current: Phase) -> Phase:
    """Resolve the target of ``transition`` from ``current``.

    Raises ``TerminalJobError`` out of terminal phases and
    ``IllegalTransitionError`` for any pair not in the table.
    """
    sources, target = TRANSITIONS[transition]
    if is_terminal(current):
        raise TerminalJobError(current, target, f"job is already {current.status.value}")
    if current not in sources:
        raise IllegalTransitionError(current, target)
    return target


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# STATE MACHINE
# ============================================================================

class LifecycleStateMachine:
    """
    Named lifecycle operations over immutable ``Job`` values.

    Every method returns a new ``Job``; none performs I/O.  Callers persist
    the result with a compare-and-set write.
    """

    def ensure_mutable(self, job: "Job", intended: Phase | str | None = None) -> None:
        """Raise ``TerminalJobError`` when ``job`` is deleted or terminal."""
        if job.deleted:
            raise TerminalJobError(job.phase, intended or "deleted", "job is deleted")
        if is_terminal(job.phase):
            raise TerminalJobError(job.phase, intended, f"job is already {job.status.value}")

    def apply(self, job: "Job", transition: Transition, *, now: datetime | None = None, **changes) -> "Job":
        """Move ``job`` along ``transition``, updating any extra fields atomically."""
        self.ensure_mutable(job, TRANSITIONS[transition][1])
        target = target_phase(transition, job.phase)

        updated = replace(
            job,
            status=target.status,
            state=target.state,
            updated_at=now or _utcnow(),
            **changes,
        )
        logger.info(
            f"Job {job.id}: {transition.value} {job.phase} -> {target}",
            extra={"job_id": job.id, "agent_id": updated.agent_id},
        )
        return updated

    # ------------------------------------------------------------------
    # Named operations
    # ------------------------------------------------------------------

    def confirm_payment(self, job: "Job", payment_reference: str | None = None, *, now: datetime | None = None) -> "Job":
        return self.apply(job, Transition.CONFIRM_PAYMENT, now=now, payment_reference=payment_reference)

    def accept(self, job: "Job", agent_id: str, *, now: datetime | None = None) -> "Job":
        self.ensure_mutable(job, ACCEPTED_PHASE)
        if job.agent_id is not None or job.status != JobStatus.AWAITING_AGENT:
            raise AlreadyAcceptedError(
                job.phase, ACCEPTED_PHASE, "job has already been accepted by another agent"
            )
        now = now or _utcnow()
        return self.apply(job, Transition.ACCEPT, now=now, agent_id=agent_id, accepted_at=now)

    def confirm_pickup(self, job: "Job", *, now: datetime | None = None) -> "Job":
        now = now or _utcnow()
        return self.apply(job, Transition.CONFIRM_PICKUP, now=now, picked_up_at=now)

    def deliver(self, job: "Job", *, now: datetime | None = None) -> "Job":
        now = now or _utcnow()
        return self.apply(job, Transition.DELIVER, now=now, completed_at=now)

    def soft_delete(self, job: "Job", actor_id: str, *, now: datetime | None = None) -> "Job":
        self.ensure_mutable(job, "deleted")
        if job.phase not in DELETABLE_PHASES:
            raise IllegalTransitionError(
                job.phase, "deleted", "only jobs without an assigned agent can be deleted"
            )
        now = now or _utcnow()
        logger.info(f"Job {job.id}: soft-deleted by {actor_id}", extra={"job_id": job.id, "actor_id": actor_id})
        return replace(job, deleted=True, deleted_at=now, deleted_by=actor_id, updated_at=now)
