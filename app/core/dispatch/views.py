# app/core/dispatch/views.py
"""
Viewer-dependent public shape of a job.

Allowlist approach: fields are copied in explicitly per audience.

| field                          | creator | assigned agent | admin | anyone else |
|--------------------------------|---------|----------------|-------|-------------|
| exact coordinates              | yes     | yes            | yes   | no          |
| obfuscated coordinates         | yes     | yes            | yes   | yes         |
| phones, instructions, billing  | yes     | yes            | yes   | no          |
| secret_code                    | yes     | no             | yes   | no          |
"""
from __future__ import annotations

from typing import Any

from app.core.dispatch.domain import EmbeddedAddress, Job, job_to_doc

_ALWAYS = (
    "id", "status", "state", "creator_id", "agent_id",
    "scheduled_date", "time_window", "package", "price",
    "reschedule_count", "max_reschedules", "failure_reason",
    "accepted_at", "picked_up_at", "completed_at",
    "created_at", "updated_at", "version",
)


def _public_address(address: EmbeddedAddress) -> dict[str, Any]:
    shown = address.obfuscated_coordinates
    return {
        "formatted_address": address.formatted_address,
        "coordinates": None,
        "obfuscated_coordinates": shown.to_dict() if shown else None,
    }


def _public_contact(contact_doc: dict[str, Any]) -> dict[str, Any]:
    return {"name": contact_doc["name"]}


def job_view(
    job: Job,
    viewer_id: str | None,
    *,
    is_admin: bool = False,
    agent_name: str | None = None,
) -> dict[str, Any]:
    doc = job_to_doc(job)
    is_creator = viewer_id is not None and viewer_id == job.creator_id
    is_agent = viewer_id is not None and viewer_id == job.agent_id
    participant = is_admin or is_creator or is_agent

    view: dict[str, Any] = {k: doc[k] for k in _ALWAYS}
    view["agent_name"] = agent_name
    view["deleted"] = job.deleted

    if participant:
        for k in ("sender", "receiver", "pickup", "delivery", "billing", "reschedule_history"):
            view[k] = doc[k]
    else:
        view["sender"] = _public_contact(doc["sender"])
        view["receiver"] = _public_contact(doc["receiver"])
        view["pickup"] = _public_address(job.pickup)
        view["delivery"] = _public_address(job.delivery)

    if is_admin or is_creator:
        view["secret_code"] = job.secret_code
    return view


def job_views(
    jobs: list[Job],
    viewer_id: str | None,
    *,
    is_admin: bool = False,
    agent_names: dict[str, str] | None = None,
) -> list[dict[str, Any]]:
    names = agent_names or {}
    return [
        job_view(j, viewer_id, is_admin=is_admin, agent_name=names.get(j.agent_id) if j.agent_id else None)
        for j in jobs
    ]
