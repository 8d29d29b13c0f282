# app/core/dispatch/domain.py
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from app.core.dispatch.errors import ValidationError
from app.core.dispatch.geo import Coordinates, validate_coordinates
from app.core.dispatch.lifecycle import (
    INITIAL_PHASE,
    REACHABLE_PHASES,
    JobState,
    JobStatus,
    Phase,
)

SECRET_CODE_LENGTH = 6
DEFAULT_MAX_RESCHEDULES = 2
DEFAULT_DELIVERY_RANGE_KM = 20.0


# ============================================================================
# ADDRESSES / CONTACTS
# ============================================================================

@dataclass(frozen=True)
class EmbeddedAddress:
    """
    A resolved address as produced by the geocoding collaborator.

    ``coordinates`` is the true point, used for routing and matching.
    ``obfuscated_coordinates`` is what non-participants get to see.
    """
    place_id: str
    formatted_address: str
    coordinates: Coordinates
    obfuscated_coordinates: Coordinates | None = None
    complementary_address: str | None = None
    instructions: str | None = None
    components: tuple[tuple[str, str], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "place_id": self.place_id,
            "formatted_address": self.formatted_address,
            "coordinates": self.coordinates.to_dict(),
            "obfuscated_coordinates": (
                self.obfuscated_coordinates.to_dict() if self.obfuscated_coordinates else None
            ),
            "complementary_address": self.complementary_address,
            "instructions": self.instructions,
            "components": dict(self.components),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EmbeddedAddress":
        if not data or not data.get("formatted_address") or data.get("coordinates") is None:
            raise ValidationError("address requires formatted_address and coordinates")
        obfuscated = data.get("obfuscated_coordinates")
        return cls(
            place_id=data.get("place_id") or "",
            formatted_address=data["formatted_address"],
            coordinates=Coordinates.from_dict(data["coordinates"]),
            obfuscated_coordinates=Coordinates.from_dict(obfuscated) if obfuscated else None,
            complementary_address=data.get("complementary_address"),
            instructions=data.get("instructions"),
            components=tuple(sorted((data.get("components") or {}).items())),
        )


@dataclass(frozen=True)
class Contact:
    """Sender or receiver person attached to a job."""
    name: str
    phone: str
    address: EmbeddedAddress | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "phone": self.phone,
            "address": self.address.to_dict() if self.address else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Contact":
        if not data or not data.get("name") or not data.get("phone"):
            raise ValidationError("contact requires name and phone")
        address = data.get("address")
        return cls(
            name=data["name"],
            phone=data["phone"],
            address=EmbeddedAddress.from_dict(address) if address else None,
        )


# ============================================================================
# SCHEDULE / PACKAGE
# ============================================================================

@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    def __post_init__(self):
        # Naive values are taken as UTC
        for name in ("start", "end"):
            value = getattr(self, name)
            if value.tzinfo is None:
                object.__setattr__(self, name, value.replace(tzinfo=timezone.utc))
        if self.end <= self.start:
            raise ValidationError("time window end must be after its start")

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimeWindow":
        return cls(start=_parse_datetime(data["start"]), end=_parse_datetime(data["end"]))


class PackageCategory(str, Enum):
    EXCEPTIONAL = "exceptional"
    URGENT = "urgent"
    EXPENSIVE = "expensive"
    SENSITIVE = "sensitive"
    URGENT_MECHANICAL_PARTS = "urgent_mechanical_parts"
    AERONAUTICS = "aeronautics"
    RARE = "rare"
    SENTIMENTAL_VALUE = "sentimental_value"
    PRODUCTS = "products"
    IT_EQUIPMENT = "it_equipment"
    GIFT = "gift"


@dataclass(frozen=True)
class PackageDimensions:
    """Centimetres."""
    length: float
    width: float
    height: float

    def __post_init__(self):
        if min(self.length, self.width, self.height) <= 0:
            raise ValidationError("package dimensions must be positive")


@dataclass(frozen=True)
class PackageDetails:
    description: str
    weight_kg: float
    category: PackageCategory
    fragile: bool = False
    dimensions: PackageDimensions | None = None
    comment: str | None = None

    def __post_init__(self):
        if not self.description:
            raise ValidationError("package description is required")
        if self.weight_kg <= 0:
            raise ValidationError("package weight must be positive")

    def to_dict(self) -> dict[str, Any]:
        dims = self.dimensions
        return {
            "description": self.description,
            "weight_kg": self.weight_kg,
            "category": self.category.value,
            "fragile": self.fragile,
            "dimensions": (
                {"length": dims.length, "width": dims.width, "height": dims.height} if dims else None
            ),
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PackageDetails":
        dims = data.get("dimensions")
        try:
            category = PackageCategory(data["category"])
        except (KeyError, ValueError):
            raise ValidationError(f"unknown package category: {data.get('category')!r}") from None
        return cls(
            description=data.get("description") or "",
            weight_kg=float(data.get("weight_kg") or 0),
            category=category,
            fragile=bool(data.get("fragile", False)),
            dimensions=PackageDimensions(**dims) if dims else None,
            comment=data.get("comment"),
        )


@dataclass(frozen=True)
class RescheduleRecord:
    timestamp: datetime
    agent_id: str
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "agent_id": self.agent_id, "reason": self.reason}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RescheduleRecord":
        return cls(
            timestamp=_parse_datetime(data["timestamp"]),
            agent_id=data["agent_id"],
            reason=data.get("reason"),
        )


# ============================================================================
# JOB
# ============================================================================

@dataclass(frozen=True, kw_only=True)
class Job:
    """
    A delivery job.

    Immutable: lifecycle changes go through ``LifecycleStateMachine`` and
    ``ReschedulePolicy``, which return new instances.  ``version`` is the
    optimistic-concurrency token checked by the store on every write.
    """
    id: str
    creator_id: str
    sender: Contact
    receiver: Contact
    pickup: EmbeddedAddress
    delivery: EmbeddedAddress
    billing: EmbeddedAddress | None
    scheduled_date: date
    time_window: TimeWindow
    package: PackageDetails
    price: Decimal
    secret_code: str
    created_at: datetime
    updated_at: datetime

    status: JobStatus = JobStatus.AWAITING_AGENT
    state: JobState = JobState.AWAITING_PREPAYMENT
    agent_id: str | None = None
    reschedule_count: int = 0
    reschedule_history: tuple[RescheduleRecord, ...] = ()
    max_reschedules: int = DEFAULT_MAX_RESCHEDULES
    failure_reason: str | None = None
    payment_reference: str | None = None
    accepted_at: datetime | None = None
    picked_up_at: datetime | None = None
    completed_at: datetime | None = None
    deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    version: int = 0

    def __post_init__(self):
        if self.phase not in REACHABLE_PHASES:
            raise ValidationError(f"unreachable job phase {self.phase}")
        if not 0 <= self.reschedule_count <= self.max_reschedules:
            raise ValidationError(
                f"reschedule_count {self.reschedule_count} outside [0, {self.max_reschedules}]"
            )
        if (self.status == JobStatus.AWAITING_AGENT) != (self.agent_id is None):
            raise ValidationError("agent_id must be set exactly when an agent has accepted the job")
        if len(self.secret_code) != SECRET_CODE_LENGTH:
            raise ValidationError("secret code must be 6 characters")

    @property
    def phase(self) -> Phase:
        return Phase(self.status, self.state)

    @property
    def is_initial(self) -> bool:
        return self.phase == INITIAL_PHASE


@dataclass(frozen=True)
class JobDraft:
    """Sender input for a new job (price computed client-side)."""
    sender: Contact
    receiver: Contact
    pickup: EmbeddedAddress
    delivery: EmbeddedAddress
    scheduled_date: date
    time_window: TimeWindow
    package: PackageDetails
    price: Decimal
    billing: EmbeddedAddress | None = None
    max_reschedules: int | None = None


@dataclass(frozen=True)
class JobEdit:
    """Partial update from the job owner; ``None`` means unchanged."""
    sender: Contact | None = None
    receiver: Contact | None = None
    pickup: EmbeddedAddress | None = None
    delivery: EmbeddedAddress | None = None
    billing: EmbeddedAddress | None = None
    scheduled_date: date | None = None
    time_window: TimeWindow | None = None
    package: PackageDetails | None = None
    price: Decimal | None = None

    def changes(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


# ============================================================================
# AGENTS / SENDER PROFILES
# ============================================================================

class AgentActivity(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"
    PENDING_APPROVAL = "pending_approval"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True, kw_only=True)
class Agent:
    """A delivery agent, keyed by the owning user id."""
    id: str
    first_name: str
    last_name: str
    home_coordinates: Coordinates
    active_status: AgentActivity = AgentActivity.PENDING_APPROVAL
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    current_location: Coordinates | None = None
    last_location_update: datetime | None = None
    delivery_range_km: float = DEFAULT_DELIVERY_RANGE_KM
    rating: float = 5.0
    completed_deliveries: int = 0
    cancelled_deliveries: int = 0
    total_earnings: Decimal = Decimal("0")

    @property
    def position(self) -> Coordinates:
        """Live location if known, home otherwise."""
        return self.current_location or self.home_coordinates

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_approved(self) -> bool:
        return self.approval_status == ApprovalStatus.APPROVED


@dataclass(frozen=True)
class IndividualProfile:
    user_id: str
    first_name: str
    last_name: str


@dataclass(frozen=True)
class ProfessionalProfile:
    user_id: str
    company_name: str
    contact_name: str


SenderProfile = IndividualProfile | ProfessionalProfile


# ============================================================================
# DOCUMENT MAPPING (stores, change feeds)
# ============================================================================

def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _parse_optional_datetime(value: Any) -> datetime | None:
    return None if value is None else _parse_datetime(value)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def parse_price(value: Any) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"invalid price: {value!r}") from None
    if not price.is_finite() or price <= 0:
        raise ValidationError("price must be a positive amount")
    return price


def job_to_doc(job: Job) -> dict[str, Any]:
    """JSON-safe document for storage and change feeds."""
    return {
        "id": job.id,
        "creator_id": job.creator_id,
        "status": job.status.value,
        "state": job.state.value,
        "sender": job.sender.to_dict(),
        "receiver": job.receiver.to_dict(),
        "pickup": job.pickup.to_dict(),
        "delivery": job.delivery.to_dict(),
        "billing": job.billing.to_dict() if job.billing else None,
        "scheduled_date": job.scheduled_date.isoformat(),
        "time_window": job.time_window.to_dict(),
        "package": job.package.to_dict(),
        "price": str(job.price),
        "secret_code": job.secret_code,
        "agent_id": job.agent_id,
        "reschedule_count": job.reschedule_count,
        "reschedule_history": [r.to_dict() for r in job.reschedule_history],
        "max_reschedules": job.max_reschedules,
        "failure_reason": job.failure_reason,
        "payment_reference": job.payment_reference,
        "accepted_at": _iso(job.accepted_at),
        "picked_up_at": _iso(job.picked_up_at),
        "completed_at": _iso(job.completed_at),
        "deleted": job.deleted,
        "deleted_at": _iso(job.deleted_at),
        "deleted_by": job.deleted_by,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
        "version": job.version,
    }


def job_from_doc(doc: dict[str, Any]) -> Job:
    billing = doc.get("billing")
    return Job(
        id=doc["id"],
        creator_id=doc["creator_id"],
        status=JobStatus(doc["status"]),
        state=JobState(doc["state"]),
        sender=Contact.from_dict(doc["sender"]),
        receiver=Contact.from_dict(doc["receiver"]),
        pickup=EmbeddedAddress.from_dict(doc["pickup"]),
        delivery=EmbeddedAddress.from_dict(doc["delivery"]),
        billing=EmbeddedAddress.from_dict(billing) if billing else None,
        scheduled_date=date.fromisoformat(doc["scheduled_date"]),
        time_window=TimeWindow.from_dict(doc["time_window"]),
        package=PackageDetails.from_dict(doc["package"]),
        price=Decimal(doc["price"]),
        secret_code=doc["secret_code"],
        agent_id=doc.get("agent_id"),
        reschedule_count=doc.get("reschedule_count", 0),
        reschedule_history=tuple(RescheduleRecord.from_dict(r) for r in doc.get("reschedule_history", [])),
        max_reschedules=doc.get("max_reschedules", DEFAULT_MAX_RESCHEDULES),
        failure_reason=doc.get("failure_reason"),
        payment_reference=doc.get("payment_reference"),
        accepted_at=_parse_optional_datetime(doc.get("accepted_at")),
        picked_up_at=_parse_optional_datetime(doc.get("picked_up_at")),
        completed_at=_parse_optional_datetime(doc.get("completed_at")),
        deleted=bool(doc.get("deleted", False)),
        deleted_at=_parse_optional_datetime(doc.get("deleted_at")),
        deleted_by=doc.get("deleted_by"),
        created_at=_parse_datetime(doc["created_at"]),
        updated_at=_parse_datetime(doc["updated_at"]),
        version=doc.get("version", 0),
    )


def agent_to_doc(agent: Agent) -> dict[str, Any]:
    return {
        "id": agent.id,
        "first_name": agent.first_name,
        "last_name": agent.last_name,
        "home_coordinates": agent.home_coordinates.to_dict(),
        "active_status": agent.active_status.value,
        "approval_status": agent.approval_status.value,
        "current_location": agent.current_location.to_dict() if agent.current_location else None,
        "last_location_update": _iso(agent.last_location_update),
        "delivery_range_km": agent.delivery_range_km,
        "rating": agent.rating,
        "completed_deliveries": agent.completed_deliveries,
        "cancelled_deliveries": agent.cancelled_deliveries,
        "total_earnings": str(agent.total_earnings),
    }


def agent_from_doc(doc: dict[str, Any]) -> Agent:
    location = doc.get("current_location")
    return Agent(
        id=doc["id"],
        first_name=doc.get("first_name", ""),
        last_name=doc.get("last_name", ""),
        home_coordinates=Coordinates.from_dict(doc["home_coordinates"]),
        active_status=AgentActivity(doc.get("active_status", AgentActivity.PENDING_APPROVAL.value)),
        approval_status=ApprovalStatus(doc.get("approval_status", ApprovalStatus.PENDING.value)),
        current_location=Coordinates.from_dict(location) if location else None,
        last_location_update=_parse_optional_datetime(doc.get("last_location_update")),
        delivery_range_km=float(doc.get("delivery_range_km") or DEFAULT_DELIVERY_RANGE_KM),
        rating=float(doc.get("rating", 5.0)),
        completed_deliveries=int(doc.get("completed_deliveries", 0)),
        cancelled_deliveries=int(doc.get("cancelled_deliveries", 0)),
        total_earnings=Decimal(str(doc.get("total_earnings", "0"))),
    )


def validate_draft(draft: JobDraft) -> None:
    """Reject drafts with bad coordinates or price before anything is written."""
    for address in (draft.pickup, draft.delivery, draft.billing):
        if address is not None:
            validate_coordinates(address.coordinates.lat, address.coordinates.lng)
    parse_price(draft.price)
    if draft.max_reschedules is not None and draft.max_reschedules < 1:
        raise ValidationError("max_reschedules must be at least 1")
