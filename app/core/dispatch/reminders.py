# app/core/dispatch/reminders.py
"""
Delivery reminders: one ``delivery_reminder`` notification per accepted
job whose time window opens within the lead time.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from app.core.dispatch.domain import Job
from app.core.dispatch.lifecycle import JobStatus
from app.core.dispatch.notifications import REMINDER_TEMPLATE, build_reminder_notification
from app.core.dispatch.ports import (
    AsyncJobStore,
    AsyncNotificationQueue,
    AsyncProfileDirectory,
    JobQuery,
)
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

REMINDER_QUERY = JobQuery(statuses=(JobStatus.AGENT_ACCEPTED,), newest_first=False)


def is_due(job: Job, now: datetime, lead_time: timedelta) -> bool:
    start = job.time_window.start
    return now < start <= now + lead_time


async def send_due_reminders(
    jobs: AsyncJobStore,
    profiles: AsyncProfileDirectory,
    queue: AsyncNotificationQueue,
    now: datetime,
    lead_time: timedelta = timedelta(hours=2),
) -> int:
    """Enqueue reminders for due jobs; returns how many were sent."""
    candidates = [j for j in await jobs.query(REMINDER_QUERY) if is_due(j, now, lead_time)]
    sent = 0
    for job in candidates:
        try:
            creator = await profiles.get_profile(job.creator_id)
            if not await queue.enqueue_reminder(build_reminder_notification(job, creator)):
                continue
        except Exception as exc:
            # Nothing was claimed; the next sweep retries this job
            AppMetrics.notification_failed(REMINDER_TEMPLATE)
            logger.error(
                f"Reminder for job {job.id} failed: {type(exc).__name__}",
                extra={"job_id": job.id},
                exc_info=True,
            )
            continue
        AppMetrics.reminder_sent()
        sent += 1
        logger.info(f"Reminder queued for job {job.id}", extra={"job_id": job.id})

    if candidates:
        logger.info(f"Reminder sweep: {sent}/{len(candidates)} due jobs notified")
    return sent
