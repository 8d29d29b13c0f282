# app/infra/pg_outbox_async.py
"""
Collaborator outboxes in PostgreSQL (asyncpg).

- ``checkout_sessions``: read by the payment collaborator, which fills in
  ``client_secret`` or ``error``; the engine watches the row via NOTIFY.
- ``notification_requests``: drained by the mail/notify collaborator.
- ``delivery_reminders``: one row per job, makes reminders at-most-once.
"""
from __future__ import annotations

import json
from typing import AsyncIterator

from app.core.dispatch.errors import NotFoundError
from app.core.dispatch.notifications import NotificationRequest
from app.core.dispatch.ports import CheckoutSession
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter
from app.infra.pg_listen_async import CHECKOUT_CHANNEL, pg_change_feed

logger = get_logger(__name__)

_SESSION_COLUMNS = "id, job_id, amount_minor, currency, metadata, client_secret, error, created_at"


def _row_to_session(row) -> CheckoutSession:
    """Convert an asyncpg Record to a CheckoutSession."""
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return CheckoutSession(
        id=row["id"],
        job_id=row["job_id"],
        amount_minor=row["amount_minor"],
        currency=row["currency"],
        metadata=dict(metadata or {}),
        client_secret=row["client_secret"],
        error=row["error"],
        created_at=row["created_at"],
    )


class AsyncPostgresCheckoutStore:

    async def create_session(self, session: CheckoutSession) -> CheckoutSession:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO checkout_sessions (id, job_id, amount_minor, currency, metadata)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING {_SESSION_COLUMNS}
                """,
                session.id,
                session.job_id,
                session.amount_minor,
                session.currency,
                session.metadata,
            )
            return _row_to_session(row)

    @retry_on_transient_error(max_retries=3)
    async def get_session(self, session_id: str) -> CheckoutSession | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SESSION_COLUMNS} FROM checkout_sessions WHERE id = $1", session_id
            )
            return _row_to_session(row) if row else None

    async def complete_session(
        self, session_id: str, *, client_secret: str | None = None, error: str | None = None
    ) -> CheckoutSession:
        """Collaborator side: record the outcome of a checkout request."""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE checkout_sessions
                SET client_secret = $2, error = $3, updated_at = now()
                WHERE id = $1
                RETURNING {_SESSION_COLUMNS}
                """,
                session_id,
                client_secret,
                error,
            )
            if row is None:
                raise NotFoundError(f"checkout session {session_id} not found")
            return _row_to_session(row)

    def watch_session(self, session_id: str) -> AsyncIterator[CheckoutSession | None]:
        return pg_change_feed(
            CHECKOUT_CHANNEL,
            lambda: self.get_session(session_id),
            lambda payload: payload.get("id") == session_id,
        )


_INSERT_NOTIFICATION = """
    INSERT INTO notification_requests (recipient_id, template_name, template_data, priority, job_id)
    VALUES ($1, $2, $3, $4, $5)
"""


def _notification_args(request: NotificationRequest) -> tuple:
    return (
        request.recipient_id,
        request.template_name,
        request.template_data,
        request.priority,
        request.job_id,
    )


class AsyncPostgresNotificationQueue:

    async def enqueue(self, request: NotificationRequest) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(_INSERT_NOTIFICATION, *_notification_args(request))
        inc_counter("notification_requests_written", template=request.template_name)
        logger.debug(
            f"Notification queued: {request.template_name} -> {request.recipient_id}",
            extra={"job_id": request.job_id},
        )

    async def enqueue_reminder(self, request: NotificationRequest) -> bool:
        """Claim and enqueue in one transaction; a failed insert leaves no claim."""
        async with safe_db_conn(autocommit=False) as conn:
            row = await conn.fetchrow(
                "INSERT INTO delivery_reminders (job_id) VALUES ($1) ON CONFLICT (job_id) DO NOTHING RETURNING job_id",
                request.job_id,
            )
            if row is None:
                return False
            await conn.execute(_INSERT_NOTIFICATION, *_notification_args(request))
        inc_counter("notification_requests_written", template=request.template_name)
        return True
