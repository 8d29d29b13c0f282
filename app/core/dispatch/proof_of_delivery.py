# app/core/dispatch/proof_of_delivery.py
"""
Proof-of-delivery handshake.

The creator shares the job's secret code with the receiver, who reads it
out to the agent at the door.  A match completes the job; a mismatch
changes nothing and may be retried any number of times.
"""
from __future__ import annotations

import hmac
import secrets
import string
from datetime import datetime

from app.core.dispatch.domain import SECRET_CODE_LENGTH, Job
from app.core.dispatch.errors import IllegalTransitionError, InvalidSecretCodeError
from app.core.dispatch.lifecycle import DELIVERED_PHASE, JobStatus, LifecycleStateMachine
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

SECRET_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_secret_code(length: int = SECRET_CODE_LENGTH) -> str:
    return "".join(secrets.choice(SECRET_CODE_ALPHABET) for _ in range(length))


def codes_match(expected: str, supplied: str) -> bool:
    """Exact, case-sensitive comparison in constant time."""
    if not isinstance(supplied, str):
        return False
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


class ProofOfDeliveryHandshake:

    def __init__(self, lifecycle: LifecycleStateMachine | None = None):
        self._lifecycle = lifecycle or LifecycleStateMachine()

    def validate(self, job: Job, supplied_code: str, *, now: datetime | None = None) -> Job:
        self._lifecycle.ensure_mutable(job, DELIVERED_PHASE)
        if job.status != JobStatus.PICKED_UP:
            raise IllegalTransitionError(
                job.phase, DELIVERED_PHASE, "package must be picked up before delivery can be confirmed"
            )
        if not codes_match(job.secret_code, supplied_code):
            logger.warning(
                f"Job {job.id}: secret code mismatch",
                extra={"job_id": job.id, "agent_id": job.agent_id},
            )
            raise InvalidSecretCodeError()
        return self._lifecycle.deliver(job, now=now)
