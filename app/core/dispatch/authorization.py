# app/core/dispatch/authorization.py
"""
Edit/delete permissions for a job.

``permissions()`` is a pure function of the job and the actor.  Mutating
engine operations call it against the freshly read job immediately before
the write, never against a value cached on the client.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from app.core.dispatch.domain import Job
from app.core.dispatch.errors import (
    DispatchError,
    NotFoundError,
    NotOwnerError,
    PermissionDeniedError,
    TerminalJobError,
)
from app.core.dispatch.lifecycle import JobState, JobStatus

EDITABLE_STATES = frozenset({JobState.AWAITING_PREPAYMENT, JobState.PREPAID})


class DenialReason(str, Enum):
    NOT_FOUND = "not found"
    NOT_OWNER = "not owner"
    ALREADY_DELETED = "already deleted"
    ALREADY_ACCEPTED = "already accepted, contact support"
    NOT_EDITABLE = "job can no longer be edited"
    NOT_DELETABLE = "job can no longer be deleted"


@dataclass(frozen=True)
class Permissions:
    can_edit: bool
    can_delete: bool
    reason: DenialReason | None = None

    def to_dict(self) -> dict:
        return {
            "can_edit": self.can_edit,
            "can_delete": self.can_delete,
            "reason": self.reason.value if self.reason else None,
        }


_DENIED_ERRORS: dict[DenialReason, type[DispatchError]] = {
    DenialReason.NOT_FOUND: NotFoundError,
    DenialReason.NOT_OWNER: NotOwnerError,
    DenialReason.ALREADY_DELETED: TerminalJobError,
    DenialReason.ALREADY_ACCEPTED: PermissionDeniedError,
    DenialReason.NOT_EDITABLE: PermissionDeniedError,
    DenialReason.NOT_DELETABLE: PermissionDeniedError,
}


def permissions(job: Job | None, actor_id: str | None, is_admin: bool = False) -> Permissions:
    """Evaluate the edit/delete rules in order; the first match wins."""
    if is_admin:
        return Permissions(can_edit=True, can_delete=True)
    if job is None:
        return Permissions(False, False, DenialReason.NOT_FOUND)
    if actor_id != job.creator_id:
        return Permissions(False, False, DenialReason.NOT_OWNER)
    if job.deleted:
        return Permissions(False, False, DenialReason.ALREADY_DELETED)
    if job.agent_id is not None and job.status != JobStatus.AWAITING_AGENT:
        return Permissions(False, False, DenialReason.ALREADY_ACCEPTED)

    return Permissions(
        can_edit=job.state in EDITABLE_STATES,
        can_delete=job.status == JobStatus.AWAITING_AGENT,
    )


def denial_error(perms: Permissions, *, editing: bool) -> DispatchError:
    """Typed error carrying the human-readable reason verbatim."""
    reason = perms.reason
    if reason is None:
        reason = DenialReason.NOT_EDITABLE if editing else DenialReason.NOT_DELETABLE
    error_cls = _DENIED_ERRORS[reason]
    if error_cls is TerminalJobError:
        return TerminalJobError("deleted", "edit" if editing else "deleted", reason.value)
    return error_cls(reason.value)


def require_edit(job: Job | None, actor_id: str | None, is_admin: bool = False) -> Permissions:
    perms = permissions(job, actor_id, is_admin)
    if not perms.can_edit:
        raise denial_error(perms, editing=True)
    return perms


def require_delete(job: Job | None, actor_id: str | None, is_admin: bool = False) -> Permissions:
    perms = permissions(job, actor_id, is_admin)
    if not perms.can_delete:
        raise denial_error(perms, editing=False)
    return perms
