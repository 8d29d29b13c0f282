# app/core/dispatch/payments.py
"""
Payment collaborator handshake.

The engine writes a checkout-session request and watches it until the
collaborator fills in ``client_secret`` (or ``error``).  The wait is
bounded; on timeout the job simply stays in ``awaiting_prepayment``.
Capture confirmation comes back separately through
``DispatchEngine.confirm_payment``.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

from app.core.dispatch.domain import Job
from app.core.dispatch.errors import ExternalServiceError, PaymentTimeoutError
from app.core.dispatch.ports import AsyncCheckoutStore, CheckoutSession
from app.core.dispatch.pricing import to_minor_units
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)


class CheckoutGateway:

    def __init__(self, store: AsyncCheckoutStore, *, currency: str = "eur", timeout_seconds: float = 15.0):
        self.store = store
        self.currency = currency
        self.timeout_seconds = timeout_seconds

    def build_session(self, job: Job) -> CheckoutSession:
        return CheckoutSession(
            id=uuid.uuid4().hex,
            job_id=job.id,
            amount_minor=to_minor_units(job.price),
            currency=self.currency,
            metadata={"job_id": job.id},
            created_at=datetime.now(timezone.utc),
        )

    async def open_checkout(self, job: Job) -> CheckoutSession:
        """Create the session and wait for the collaborator's answer."""
        session = await self.store.create_session(self.build_session(job))
        logger.info(
            f"Checkout session {session.id} requested: {session.amount_minor} {session.currency}",
            extra={"job_id": job.id},
        )
        try:
            ready = await asyncio.wait_for(self._await_ready(session.id), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            AppMetrics.payment_timeout()
            logger.warning(
                f"Checkout session {session.id} not answered within {self.timeout_seconds}s",
                extra={"job_id": job.id},
            )
            raise PaymentTimeoutError(
                f"payment service did not respond within {self.timeout_seconds:g} seconds"
            ) from None

        if ready.error:
            logger.error(f"Checkout session {session.id} failed: {ready.error}", extra={"job_id": job.id})
            raise ExternalServiceError(f"payment service error: {ready.error}")
        return ready

    async def _await_ready(self, session_id: str) -> CheckoutSession:
        feed = self.store.watch_session(session_id)
        try:
            async for snapshot in feed:
                if snapshot is not None and snapshot.is_ready:
                    return snapshot
        finally:
            aclose = getattr(feed, "aclose", None)
            if aclose is not None:
                await aclose()
        raise ExternalServiceError("checkout session feed closed before the payment service answered")
