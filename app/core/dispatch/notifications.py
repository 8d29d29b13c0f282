# app/core/dispatch/notifications.py
"""
Notification requests for the outbound mail/notify queue.

Template rendering and delivery belong to the notification collaborator;
this module only decides *which* template and *what data*.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, assert_never

from app.core.dispatch.domain import (
    IndividualProfile,
    Job,
    ProfessionalProfile,
    SenderProfile,
    TimeWindow,
)
from app.core.dispatch.lifecycle import JobStatus

FALLBACK_DISPLAY_NAME = "Client"
REMINDER_TEMPLATE = "delivery_reminder"


@dataclass(frozen=True)
class NotificationRequest:
    recipient_id: str
    template_name: str
    template_data: dict[str, Any] = field(default_factory=dict)
    priority: str = "high"
    job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "template": {"name": self.template_name, "data": self.template_data},
            "priority": self.priority,
            "job_id": self.job_id,
        }


def template_for_status(status: JobStatus) -> str | None:
    """Template for a job that just entered ``status``; ``None`` sends nothing."""
    match status:
        case JobStatus.AWAITING_AGENT:
            return None
        case JobStatus.AGENT_ACCEPTED:
            return "agent_assigned"
        case JobStatus.PICKED_UP:
            return "package_picked_up"
        case JobStatus.DELIVERED:
            return "delivery_completed"
        case JobStatus.FAILED:
            return "delivery_failed"
        case JobStatus.RESCHEDULED:
            return "delivery_rescheduled"
        case _:
            assert_never(status)


def display_name(profile: SenderProfile | None) -> str:
    match profile:
        case IndividualProfile(first_name=first, last_name=last):
            return f"{first or ''} {last or ''}".strip() or FALLBACK_DISPLAY_NAME
        case ProfessionalProfile(contact_name=contact):
            return contact or FALLBACK_DISPLAY_NAME
        case None:
            return FALLBACK_DISPLAY_NAME
        case _:
            assert_never(profile)


def format_price(price: Decimal) -> str:
    return f"€{price.quantize(Decimal('0.01'))}"


def format_time_window(window: TimeWindow) -> str:
    return f"{window.start:%H:%M} - {window.end:%H:%M}"


def _delivery_block(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "packageDescription": job.package.description,
        "pickupAddress": job.pickup.formatted_address,
        "deliveryAddress": job.delivery.formatted_address,
        "price": float(job.price),
        "priceFormatted": format_price(job.price),
        "secretCode": job.secret_code,
        "scheduledDate": job.scheduled_date.strftime("%d/%m/%Y"),
        "timeSlot": format_time_window(job.time_window),
    }


def build_status_notification(job: Job, creator: SenderProfile | None) -> NotificationRequest | None:
    """Notification to the job's creator for its current status."""
    template = template_for_status(job.status)
    if template is None:
        return None

    data: dict[str, Any] = {
        "user": {"firstName": display_name(creator)},
        "delivery": _delivery_block(job),
    }
    if job.status == JobStatus.FAILED:
        data["failureReason"] = job.failure_reason or "delivery failed"
    elif job.status == JobStatus.RESCHEDULED:
        last = job.reschedule_history[-1] if job.reschedule_history else None
        data["rescheduleCount"] = job.reschedule_count
        data["maxReschedules"] = job.max_reschedules
        data["reason"] = (last.reason if last else None) or "delivery postponed"

    return NotificationRequest(
        recipient_id=job.creator_id,
        template_name=template,
        template_data=data,
        job_id=job.id,
    )


def build_reminder_notification(job: Job, creator: SenderProfile | None) -> NotificationRequest:
    return NotificationRequest(
        recipient_id=job.creator_id,
        template_name=REMINDER_TEMPLATE,
        template_data={
            "user": {"firstName": display_name(creator)},
            "delivery": _delivery_block(job),
        },
        priority="normal",
        job_id=job.id,
    )
