# tests/conftest.py
"""Pytest configuration and fixtures"""
import os
import random
import sys
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Settings are read once at import time
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("ADMIN_TOKEN", "Adm1nTestTokenQ7x9Lw2Rz8Kp4Vb6Nm3Hj5")
os.environ.setdefault("PAYMENT_WEBHOOK_TOKEN", "PayHookQ7x9Lw2Rz8Kp4Vb6Nm3Hj5Tt1Yy")
os.environ.setdefault("METRICS_TOKEN", "MetricsQ7x9Lw2Rz8Kp4Vb6Nm3Hj5Tt1Yy")
os.environ.setdefault("ENABLE_REQUEST_LOGGING", "false")

from app.core.dispatch.domain import (  # noqa: E402
    Agent,
    AgentActivity,
    ApprovalStatus,
    Contact,
    EmbeddedAddress,
    IndividualProfile,
    Job,
    JobDraft,
    PackageCategory,
    PackageDetails,
    TimeWindow,
)
from app.core.dispatch.engine import DispatchEngine  # noqa: E402
from app.core.dispatch.geo import Coordinates  # noqa: E402
from app.core.dispatch.subscriptions import SubscriptionManager  # noqa: E402
from app.infra.memory_store import (  # noqa: E402
    InMemoryAgentStore,
    InMemoryCheckoutStore,
    InMemoryJobStore,
    InMemoryNotificationQueue,
    InMemoryProfileDirectory,
)

# Paris: pickup ~1 km from the agent, delivery ~3.6 km
PICKUP = Coordinates(48.8566, 2.3522)
DELIVERY = Coordinates(48.8738, 2.2950)
AGENT_HOME = Coordinates(48.8600, 2.3400)
LYON = Coordinates(45.764, 4.8357)

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

CREATOR_ID = "creator-1"


class FakeClock:
    """Deterministic clock for the engine and the reminder worker."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_address(point: Coordinates = PICKUP, label: str = "10 Rue de Rivoli, Paris") -> EmbeddedAddress:
    return EmbeddedAddress(place_id=f"place-{label[:8]}", formatted_address=label, coordinates=point)


def make_draft(
    *,
    pickup: Coordinates = PICKUP,
    delivery: Coordinates = DELIVERY,
    price: str = "25.50",
    max_reschedules: int | None = None,
    window_start: datetime = NOW + timedelta(hours=1),
) -> JobDraft:
    return JobDraft(
        sender=Contact(name="Alice Martin", phone="+33600000001"),
        receiver=Contact(name="Bruno Petit", phone="+33600000002"),
        pickup=make_address(pickup, "10 Rue de Rivoli, Paris"),
        delivery=make_address(delivery, "Place Charles de Gaulle, Paris"),
        scheduled_date=window_start.date(),
        time_window=TimeWindow(start=window_start, end=window_start + timedelta(hours=2)),
        package=PackageDetails(description="Camera lens", weight_kg=1.2, category=PackageCategory.EXPENSIVE),
        price=Decimal(price),
        max_reschedules=max_reschedules,
    )


def make_job(**overrides) -> Job:
    """A stored-looking job in the initial phase; override any field."""
    fields = dict(
        id="job-1",
        creator_id=CREATOR_ID,
        sender=Contact(name="Alice Martin", phone="+33600000001"),
        receiver=Contact(name="Bruno Petit", phone="+33600000002"),
        pickup=make_address(PICKUP),
        delivery=make_address(DELIVERY, "Place Charles de Gaulle, Paris"),
        billing=None,
        scheduled_date=date(2026, 3, 2),
        time_window=TimeWindow(start=NOW + timedelta(hours=1), end=NOW + timedelta(hours=3)),
        package=PackageDetails(description="Camera lens", weight_kg=1.2, category=PackageCategory.EXPENSIVE),
        price=Decimal("25.50"),
        secret_code="K7PX2Q",
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return Job(**fields)


def make_agent(
    agent_id: str = "agent-1",
    *,
    home: Coordinates = AGENT_HOME,
    range_km: float = 10.0,
    approved: bool = True,
) -> Agent:
    return Agent(
        id=agent_id,
        first_name="Chloe",
        last_name=agent_id.title(),
        home_coordinates=home,
        approval_status=ApprovalStatus.APPROVED if approved else ApprovalStatus.PENDING,
        active_status=AgentActivity.AVAILABLE if approved else AgentActivity.PENDING_APPROVAL,
        delivery_range_km=range_km,
    )


class Scenario:
    """Drives a job through the lifecycle with the in-memory engine."""

    def __init__(self, engine: DispatchEngine, stores: SimpleNamespace, clock: FakeClock):
        self.engine = engine
        self.stores = stores
        self.clock = clock

    async def new_job(self, **draft_kwargs) -> Job:
        return await self.engine.create_job(CREATOR_ID, make_draft(**draft_kwargs))

    async def prepaid_job(self, **draft_kwargs) -> Job:
        job = await self.new_job(**draft_kwargs)
        return await self.engine.confirm_payment(job.id, "pi_test")

    async def accepted_job(self, agent_id: str = "agent-1", **draft_kwargs) -> Job:
        job = await self.prepaid_job(**draft_kwargs)
        return await self.engine.accept_job(job.id, agent_id)

    async def picked_up_job(self, agent_id: str = "agent-1", **draft_kwargs) -> Job:
        job = await self.accepted_job(agent_id, **draft_kwargs)
        return await self.engine.confirm_pickup(job.id, agent_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stores():
    return SimpleNamespace(
        jobs=InMemoryJobStore(),
        agents=InMemoryAgentStore([
            make_agent("agent-1"),
            make_agent("agent-2"),
            make_agent("agent-short", range_km=1.0),
            make_agent("agent-pending", approved=False),
        ]),
        profiles=InMemoryProfileDirectory([IndividualProfile(CREATOR_ID, "Alice", "Martin")]),
        checkout=InMemoryCheckoutStore(auto_approve=True),
        notifications=InMemoryNotificationQueue(),
    )


@pytest.fixture
def engine(stores, clock):
    return DispatchEngine(
        stores.jobs,
        stores.agents,
        stores.profiles,
        stores.checkout,
        stores.notifications,
        subscriptions=SubscriptionManager("test"),
        payment_timeout_seconds=0.5,
        rng=random.Random(7),
        clock=clock,
    )


@pytest.fixture
def scenario(engine, stores, clock):
    return Scenario(engine, stores, clock)
