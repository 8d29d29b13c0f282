# tests/test_lifecycle.py
"""Tests for the job lifecycle table and LifecycleStateMachine."""
import pytest

from app.core.dispatch.errors import (
    AlreadyAcceptedError,
    IllegalTransitionError,
    TerminalJobError,
    ValidationError,
)
from app.core.dispatch.lifecycle import (
    ACCEPTED_PHASE,
    DELETABLE_PHASES,
    DELIVERED_PHASE,
    FAILED_PHASE,
    INITIAL_PHASE,
    PICKED_UP_PHASE,
    PREPAID_PHASE,
    REACHABLE_PHASES,
    RESCHEDULED_PHASE,
    TERMINAL_PHASES,
    TRANSITIONS,
    JobState,
    JobStatus,
    LifecycleStateMachine,
    Phase,
    Transition,
    target_phase,
    transition_between,
)
from conftest import NOW, make_job

EXPECTED_TABLE = {
    Transition.CONFIRM_PAYMENT: ({INITIAL_PHASE}, PREPAID_PHASE),
    Transition.ACCEPT: ({PREPAID_PHASE}, ACCEPTED_PHASE),
    Transition.CONFIRM_PICKUP: ({ACCEPTED_PHASE, RESCHEDULED_PHASE}, PICKED_UP_PHASE),
    Transition.RESCHEDULE: ({ACCEPTED_PHASE, PICKED_UP_PHASE, RESCHEDULED_PHASE}, RESCHEDULED_PHASE),
    Transition.FAIL: ({ACCEPTED_PHASE, PICKED_UP_PHASE, RESCHEDULED_PHASE}, FAILED_PHASE),
    Transition.DELIVER: ({PICKED_UP_PHASE}, DELIVERED_PHASE),
}


def _job_in(phase: Phase, **overrides):
    agent_id = None if phase.status == JobStatus.AWAITING_AGENT else "agent-1"
    return make_job(status=phase.status, state=phase.state, agent_id=agent_id, **overrides)


class TestTransitionTable:
    def test_table_matches_lifecycle(self):
        assert set(TRANSITIONS) == set(EXPECTED_TABLE)
        for transition, (sources, target) in EXPECTED_TABLE.items():
            assert TRANSITIONS[transition] == (frozenset(sources), target)

    def test_reachable_phases(self):
        assert REACHABLE_PHASES == {
            INITIAL_PHASE, PREPAID_PHASE, ACCEPTED_PHASE, PICKED_UP_PHASE,
            RESCHEDULED_PHASE, DELIVERED_PHASE, FAILED_PHASE,
        }

    def test_terminal_phases(self):
        assert TERMINAL_PHASES == {DELIVERED_PHASE, FAILED_PHASE}

    def test_only_unassigned_phases_are_deletable(self):
        assert DELETABLE_PHASES == {INITIAL_PHASE, PREPAID_PHASE}

    @pytest.mark.parametrize("phase", sorted(REACHABLE_PHASES, key=str))
    @pytest.mark.parametrize("transition", list(Transition))
    def test_every_phase_transition_pair(self, phase, transition):
        sources, target = EXPECTED_TABLE[transition]
        if phase in TERMINAL_PHASES:
            with pytest.raises(TerminalJobError):
                target_phase(transition, phase)
        elif phase in sources:
            assert target_phase(transition, phase) == target
        else:
            with pytest.raises(IllegalTransitionError) as exc_info:
                target_phase(transition, phase)
            assert not isinstance(exc_info.value, TerminalJobError)
            assert exc_info.value.status_code == 409

    def test_phase_str(self):
        assert str(INITIAL_PHASE) == "(awaiting_agent, awaiting_prepayment)"


class TestJobInvariants:
    def test_unreachable_phase_rejected(self):
        with pytest.raises(ValidationError):
            make_job(status=JobStatus.DELIVERED, state=JobState.PREPAID, agent_id="agent-1")

    def test_agent_required_once_accepted(self):
        with pytest.raises(ValidationError):
            make_job(status=JobStatus.AGENT_ACCEPTED, state=JobState.PROCESSING)

    def test_agent_forbidden_while_awaiting(self):
        with pytest.raises(ValidationError):
            make_job(agent_id="agent-1")

    def test_reschedule_count_bounded(self):
        with pytest.raises(ValidationError):
            _job_in(RESCHEDULED_PHASE, reschedule_count=3, max_reschedules=2)

    def test_secret_code_length(self):
        with pytest.raises(ValidationError):
            make_job(secret_code="ABC")


class TestLifecycleStateMachine:
    def setup_method(self):
        self.machine = LifecycleStateMachine()

    def test_confirm_payment(self):
        job = self.machine.confirm_payment(make_job(), "pi_123", now=NOW)
        assert job.phase == PREPAID_PHASE
        assert job.payment_reference == "pi_123"
        assert job.updated_at == NOW

    def test_transitions_return_new_objects(self):
        original = make_job()
        updated = self.machine.confirm_payment(original, now=NOW)
        assert updated is not original
        assert original.phase == INITIAL_PHASE

    def test_accept_sets_agent_and_timestamp(self):
        job = self.machine.accept(_job_in(PREPAID_PHASE), "agent-7", now=NOW)
        assert job.phase == ACCEPTED_PHASE
        assert job.agent_id == "agent-7"
        assert job.accepted_at == NOW

    def test_accept_before_payment_is_illegal(self):
        with pytest.raises(IllegalTransitionError):
            self.machine.accept(make_job(), "agent-7")

    def test_accept_already_accepted(self):
        with pytest.raises(AlreadyAcceptedError) as exc_info:
            self.machine.accept(_job_in(ACCEPTED_PHASE), "agent-2")
        assert isinstance(exc_info.value, IllegalTransitionError)

    def test_pickup_and_deliver(self):
        job = self.machine.confirm_pickup(_job_in(ACCEPTED_PHASE), now=NOW)
        assert job.phase == PICKED_UP_PHASE
        assert job.picked_up_at == NOW
        job = self.machine.deliver(job, now=NOW)
        assert job.phase == DELIVERED_PHASE
        assert job.completed_at == NOW

    def test_pickup_resumes_rescheduled_job(self):
        job = self.machine.confirm_pickup(_job_in(RESCHEDULED_PHASE, reschedule_count=1))
        assert job.phase == PICKED_UP_PHASE

    @pytest.mark.parametrize("phase", [DELIVERED_PHASE, FAILED_PHASE])
    def test_terminal_jobs_are_immutable(self, phase):
        job = _job_in(phase)
        with pytest.raises(TerminalJobError):
            self.machine.confirm_pickup(job)
        with pytest.raises(TerminalJobError):
            self.machine.ensure_mutable(job)

    def test_deleted_job_is_immutable(self):
        job = make_job(deleted=True)
        with pytest.raises(TerminalJobError):
            self.machine.confirm_payment(job)

    def test_soft_delete(self):
        job = self.machine.soft_delete(_job_in(PREPAID_PHASE), "creator-1", now=NOW)
        assert job.deleted is True
        assert job.deleted_by == "creator-1"
        assert job.deleted_at == NOW
        assert job.phase == PREPAID_PHASE

    def test_soft_delete_with_agent_assigned_is_illegal(self):
        with pytest.raises(IllegalTransitionError):
            self.machine.soft_delete(_job_in(ACCEPTED_PHASE), "creator-1")

    def test_soft_delete_twice(self):
        job = self.machine.soft_delete(make_job(), "creator-1")
        with pytest.raises(TerminalJobError):
            self.machine.soft_delete(job, "creator-1")

    def test_apply_carries_extra_fields(self):
        job = _job_in(ACCEPTED_PHASE)
        failed = self.machine.apply(job, Transition.FAIL, failure_reason="road closed")
        assert failed.phase == FAILED_PHASE
        assert failed.failure_reason == "road closed"

    def test_illegal_transition_error_names_phases(self):
        with pytest.raises(IllegalTransitionError) as exc_info:
            self.machine.deliver(make_job())
        assert exc_info.value.from_phase == INITIAL_PHASE
        assert exc_info.value.to_phase == DELIVERED_PHASE


class TestTransitionBetween:
    @pytest.mark.parametrize("before,after,expected", [
        (INITIAL_PHASE, PREPAID_PHASE, Transition.CONFIRM_PAYMENT),
        (PREPAID_PHASE, ACCEPTED_PHASE, Transition.ACCEPT),
        (RESCHEDULED_PHASE, PICKED_UP_PHASE, Transition.CONFIRM_PICKUP),
        (PICKED_UP_PHASE, DELIVERED_PHASE, Transition.DELIVER),
        (PREPAID_PHASE, PREPAID_PHASE, None),
    ])
    def test_phase_changes(self, before, after, expected):
        assert transition_between(_job_in(before), _job_in(after)) is expected

    def test_repeated_reschedule_is_a_transition(self):
        before = _job_in(RESCHEDULED_PHASE, reschedule_count=1, max_reschedules=3)
        after = _job_in(RESCHEDULED_PHASE, reschedule_count=2, max_reschedules=3)
        assert transition_between(before, after) is Transition.RESCHEDULE

    def test_exhausted_reschedule_is_a_failure(self):
        before = _job_in(RESCHEDULED_PHASE, reschedule_count=1)
        after = _job_in(FAILED_PHASE, reschedule_count=2)
        assert transition_between(before, after) is Transition.FAIL
