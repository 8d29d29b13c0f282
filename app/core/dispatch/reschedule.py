# app/core/dispatch/reschedule.py
"""
Bounded agent-initiated rescheduling.

The assigned agent may postpone a job a limited number of times.  Each
call appends a ``RescheduleRecord`` and bumps ``reschedule_count``; when
the new count reaches ``max_reschedules`` the job fails instead.  This is
the only code path that writes the reschedule fields.
"""
from __future__ import annotations

from datetime import datetime, timezone

from app.core.dispatch.domain import Job, RescheduleRecord
from app.core.dispatch.errors import NotAssignedAgentError
from app.core.dispatch.lifecycle import (
    FAILED_PHASE,
    RESCHEDULED_PHASE,
    LifecycleStateMachine,
    Transition,
)
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

EXHAUSTED_REASON = "maximum number of reschedules reached"


class ReschedulePolicy:

    def __init__(self, lifecycle: LifecycleStateMachine | None = None):
        self._lifecycle = lifecycle or LifecycleStateMachine()

    def next_transition(self, job: Job) -> Transition:
        """RESCHEDULE while budget remains, FAIL once the incremented count hits the cap."""
        if job.reschedule_count + 1 >= job.max_reschedules:
            return Transition.FAIL
        return Transition.RESCHEDULE

    def reschedule(
        self,
        job: Job,
        agent_id: str,
        reason: str | None = None,
        *,
        now: datetime | None = None,
    ) -> Job:
        # Terminal/deleted check first so a failed job reports TerminalJobError
        self._lifecycle.ensure_mutable(job, RESCHEDULED_PHASE)
        if job.agent_id != agent_id:
            raise NotAssignedAgentError("only the assigned agent can reschedule this job")

        now = now or datetime.now(timezone.utc)
        transition = self.next_transition(job)
        record = RescheduleRecord(timestamp=now, agent_id=agent_id, reason=reason)
        changes = {
            "reschedule_count": job.reschedule_count + 1,
            "reschedule_history": job.reschedule_history + (record,),
        }
        if transition is Transition.FAIL:
            changes["failure_reason"] = reason or EXHAUSTED_REASON

        updated = self._lifecycle.apply(job, transition, now=now, **changes)

        if updated.phase == FAILED_PHASE:
            logger.warning(
                f"Job {job.id} failed after {updated.reschedule_count}/{job.max_reschedules} reschedules",
                extra={"job_id": job.id, "agent_id": agent_id},
            )
        return updated
