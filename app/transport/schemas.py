# app/transport/schemas.py
"""
Request bodies for the HTTP API.

Pydantic checks shape and sizes only.  Domain rules (coordinate ranges,
positive price, time window order) are enforced when the body is
converted with ``to_domain()`` and surface as 400 ``ValidationError``.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from app.core.dispatch.domain import (
    Agent,
    AgentActivity,
    ApprovalStatus,
    Contact,
    EmbeddedAddress,
    JobDraft,
    JobEdit,
    PackageCategory,
    PackageDetails,
    PackageDimensions,
    TimeWindow,
)
from app.core.dispatch.geo import Coordinates, validate_coordinates


class CoordinatesIn(BaseModel):
    lat: float
    lng: float

    def to_domain(self) -> Coordinates:
        return validate_coordinates(self.lat, self.lng)


class AddressIn(BaseModel):
    place_id: str = Field(default="", max_length=256)
    formatted_address: str = Field(min_length=1, max_length=500)
    coordinates: CoordinatesIn
    complementary_address: str | None = Field(default=None, max_length=500)
    instructions: str | None = Field(default=None, max_length=1000)
    components: dict[str, str] = Field(default_factory=dict)

    def to_domain(self) -> EmbeddedAddress:
        return EmbeddedAddress(
            place_id=self.place_id,
            formatted_address=self.formatted_address,
            coordinates=self.coordinates.to_domain(),
            complementary_address=self.complementary_address,
            instructions=self.instructions,
            components=tuple(sorted(self.components.items())),
        )


class ContactIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    phone: str = Field(min_length=3, max_length=32)
    address: AddressIn | None = None

    def to_domain(self) -> Contact:
        return Contact(
            name=self.name,
            phone=self.phone,
            address=self.address.to_domain() if self.address else None,
        )


class TimeWindowIn(BaseModel):
    start: datetime
    end: datetime

    def to_domain(self) -> TimeWindow:
        return TimeWindow(start=self.start, end=self.end)


class DimensionsIn(BaseModel):
    length: float
    width: float
    height: float


class PackageIn(BaseModel):
    description: str = Field(min_length=1, max_length=1000)
    weight_kg: float
    category: PackageCategory
    fragile: bool = False
    dimensions: DimensionsIn | None = None
    comment: str | None = Field(default=None, max_length=1000)

    def to_domain(self) -> PackageDetails:
        dims = self.dimensions
        return PackageDetails(
            description=self.description,
            weight_kg=self.weight_kg,
            category=self.category,
            fragile=self.fragile,
            dimensions=PackageDimensions(dims.length, dims.width, dims.height) if dims else None,
            comment=self.comment,
        )


class JobCreateIn(BaseModel):
    sender: ContactIn
    receiver: ContactIn
    pickup: AddressIn
    delivery: AddressIn
    billing: AddressIn | None = None
    scheduled_date: date
    time_window: TimeWindowIn
    package: PackageIn
    price: Decimal
    max_reschedules: int | None = Field(default=None, ge=1, le=10)

    def to_domain(self) -> JobDraft:
        return JobDraft(
            sender=self.sender.to_domain(),
            receiver=self.receiver.to_domain(),
            pickup=self.pickup.to_domain(),
            delivery=self.delivery.to_domain(),
            billing=self.billing.to_domain() if self.billing else None,
            scheduled_date=self.scheduled_date,
            time_window=self.time_window.to_domain(),
            package=self.package.to_domain(),
            price=self.price,
            max_reschedules=self.max_reschedules,
        )


class JobEditIn(BaseModel):
    """Only the fields present in the body are changed."""
    sender: ContactIn | None = None
    receiver: ContactIn | None = None
    pickup: AddressIn | None = None
    delivery: AddressIn | None = None
    billing: AddressIn | None = None
    scheduled_date: date | None = None
    time_window: TimeWindowIn | None = None
    package: PackageIn | None = None
    price: Decimal | None = None

    def to_domain(self) -> JobEdit:
        def convert(value):
            return value.to_domain() if value is not None else None

        return JobEdit(
            sender=convert(self.sender),
            receiver=convert(self.receiver),
            pickup=convert(self.pickup),
            delivery=convert(self.delivery),
            billing=convert(self.billing),
            scheduled_date=self.scheduled_date,
            time_window=convert(self.time_window),
            package=convert(self.package),
            price=self.price,
        )


class RescheduleIn(BaseModel):
    reason: str | None = Field(default=None, max_length=500)

    @field_validator("reason")
    @classmethod
    def blank_reason_is_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v.strip()


class DeliverIn(BaseModel):
    """The code is compared exactly as typed."""
    secret_code: str = Field(min_length=1, max_length=32)


class PaymentConfirmIn(BaseModel):
    job_id: str = Field(min_length=1, max_length=64)
    payment_reference: str | None = Field(default=None, max_length=255)


class LocationIn(CoordinatesIn):
    pass


class QuoteIn(BaseModel):
    pickup: CoordinatesIn
    delivery: CoordinatesIn
    agent_location: CoordinatesIn | None = None


class AgentIn(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(default="", max_length=100)
    home_coordinates: CoordinatesIn
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    active_status: AgentActivity = AgentActivity.PENDING_APPROVAL
    delivery_range_km: float | None = Field(default=None, gt=0, le=500)
    rating: float = Field(default=5.0, ge=0, le=5)

    def to_domain(self, agent_id: str, default_range_km: float) -> Agent:
        return Agent(
            id=agent_id,
            first_name=self.first_name,
            last_name=self.last_name,
            home_coordinates=self.home_coordinates.to_domain(),
            approval_status=self.approval_status,
            active_status=self.active_status,
            delivery_range_km=self.delivery_range_km or default_range_km,
            rating=self.rating,
        )


class ActivityIn(BaseModel):
    active_status: AgentActivity
