# app/core/dispatch/errors.py
"""
Typed errors for the dispatch core.

Each error maps to a specific HTTP status code.  The transport layer
catches ``DispatchError`` subtypes and converts them to JSON responses
without embedding business logic in the route handlers.  ``detail`` is
human-readable and is rendered verbatim.
"""
from __future__ import annotations

from typing import Any


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Malformed input, e.g. a missing address (400)."""

    status_code = 400


class InvalidCoordinateError(ValidationError):
    """NaN or out-of-domain latitude/longitude."""

    def __init__(self, lat: Any, lng: Any):
        self.lat = lat
        self.lng = lng
        super().__init__(f"invalid coordinates: lat={lat!r}, lng={lng!r}")


class NotFoundError(DispatchError):
    """Job, agent or checkout session not found (404)."""

    status_code = 404


class PermissionDeniedError(DispatchError):
    """Actor lacks rights for the operation (403)."""

    status_code = 403


class NotOwnerError(PermissionDeniedError):
    pass


class NotAssignedAgentError(PermissionDeniedError):
    pass


class AgentNotApprovedError(PermissionDeniedError):
    pass


class IllegalTransitionError(DispatchError):
    """Attempted status/state change outside the lifecycle table (409)."""

    status_code = 409

    def __init__(self, from_phase: Any, to_phase: Any, detail: str | None = None):
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(detail or f"illegal transition: {from_phase} -> {to_phase}")


class TerminalJobError(IllegalTransitionError):
    """Mutation attempted on a completed, failed or deleted job."""


class AlreadyAcceptedError(IllegalTransitionError):
    """Lost the acceptance race: another agent holds the job."""


class InvalidSecretCodeError(DispatchError):
    """Proof-of-delivery code mismatch (422). Retryable, no state change."""

    status_code = 422

    def __init__(self, detail: str = "invalid secret code"):
        super().__init__(detail)


class ExternalServiceError(DispatchError):
    """Payment or notification collaborator failure (502)."""

    status_code = 502


class PaymentTimeoutError(ExternalServiceError):
    """Payment collaborator did not answer in time (504)."""

    status_code = 504


class StaleWriteError(DispatchError):
    """
    Compare-and-set write lost against a concurrent writer.

    Raised by stores when the expected document version no longer matches.
    The engine re-reads and re-checks; callers only see it once retries
    are exhausted.
    """

    status_code = 409

    def __init__(self, job_id: str, expected_version: int):
        self.job_id = job_id
        self.expected_version = expected_version
        super().__init__(f"job {job_id} was modified concurrently (expected version {expected_version})")
