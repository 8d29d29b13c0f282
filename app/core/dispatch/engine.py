# app/core/dispatch/engine.py
"""
DispatchEngine: composition root of the dispatch core.

Every mutating operation follows the same shape:

    per-job lock -> fresh read -> guards -> lifecycle -> compare-and-set write
                                                     -> side effects (notify, counters)

The per-job lock linearizes writers inside one process; the store's
version check (``StaleWriteError``) linearizes writers across processes.
On a lost write the whole read/guard/transition step is re-run against
the newly stored job, so a second accept sees the first agent and fails
with ``AlreadyAcceptedError`` instead of overwriting it.
"""
from __future__ import annotations

import asyncio
import random
import uuid
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Callable

from app.core.dispatch.authorization import Permissions, permissions, require_delete, require_edit
from app.core.dispatch.domain import (
    DEFAULT_MAX_RESCHEDULES,
    Agent,
    AgentActivity,
    Job,
    JobDraft,
    JobEdit,
    parse_price,
    validate_draft,
)
from app.core.dispatch.errors import (
    AgentNotApprovedError,
    AlreadyAcceptedError,
    DispatchError,
    IllegalTransitionError,
    InvalidSecretCodeError,
    NotAssignedAgentError,
    NotFoundError,
    NotOwnerError,
    StaleWriteError,
    ValidationError,
)
from app.core.dispatch.geo import Coordinates, job_in_agent_range, obfuscate_point, validate_coordinates
from app.core.dispatch.lifecycle import (
    INITIAL_PHASE,
    JobState,
    JobStatus,
    LifecycleStateMachine,
    Phase,
    transition_between,
)
from app.core.dispatch.notifications import build_status_notification
from app.core.dispatch.payments import CheckoutGateway
from app.core.dispatch.ports import (
    OPEN_JOBS_QUERY,
    AsyncAgentStore,
    AsyncCheckoutStore,
    AsyncJobStore,
    AsyncNotificationQueue,
    AsyncProfileDirectory,
    CheckoutSession,
    JobQuery,
)
from app.core.dispatch.pricing import PriceQuote, estimate_price
from app.core.dispatch.proof_of_delivery import ProofOfDeliveryHandshake, generate_secret_code
from app.core.dispatch.reschedule import ReschedulePolicy
from app.core.dispatch.subscriptions import (
    ChangeCallback,
    ErrorCallback,
    Subscription,
    SubscriptionManager,
    agent_jobs_key,
    available_jobs_key,
    creator_jobs_key,
    job_key,
)
from app.core.dispatch.views import job_view, job_views
from app.infra.logging_config import get_logger, mask_coordinates
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

Mutator = Callable[[Job], Job]


class DispatchEngine:

    def __init__(
        self,
        jobs: AsyncJobStore,
        agents: AsyncAgentStore,
        profiles: AsyncProfileDirectory,
        checkout: AsyncCheckoutStore,
        notifications: AsyncNotificationQueue,
        *,
        subscriptions: SubscriptionManager | None = None,
        obfuscation_radius_m: float = 300.0,
        default_max_reschedules: int = DEFAULT_MAX_RESCHEDULES,
        write_retry_attempts: int = 3,
        payment_timeout_seconds: float = 15.0,
        payment_currency: str = "eur",
        pricing: dict[str, Decimal] | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.jobs = jobs
        self.agents = agents
        self.profiles = profiles
        self.notifications = notifications
        self.subscriptions = subscriptions or SubscriptionManager("engine")

        self.lifecycle = LifecycleStateMachine()
        self.reschedule_policy = ReschedulePolicy(self.lifecycle)
        self.handshake = ProofOfDeliveryHandshake(self.lifecycle)
        self.payments = CheckoutGateway(
            checkout, currency=payment_currency, timeout_seconds=payment_timeout_seconds
        )

        self.obfuscation_radius_m = obfuscation_radius_m
        self.default_max_reschedules = default_max_reschedules
        self.write_retry_attempts = max(1, write_retry_attempts)
        self.pricing = pricing or {}
        self._rng = rng
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        # job_id -> [lock, waiters]; entries are dropped when no one holds them
        self._job_locks: dict[str, list[Any]] = {}

    # ========================================================================
    # Write path
    # ========================================================================

    @asynccontextmanager
    async def _job_lock(self, job_id: str) -> AsyncIterator[None]:
        entry = self._job_locks.get(job_id)
        if entry is None:
            entry = self._job_locks[job_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._job_locks.pop(job_id, None)

    async def _mutate(self, job_id: str, operation: str, mutator: Mutator) -> tuple[Job, Job]:
        """Read-check-write ``job_id`` atomically; returns (before, after)."""
        with AppMetrics.track_operation_time(operation):
            async with self._job_lock(job_id):
                for attempt in range(1, self.write_retry_attempts + 1):
                    current = await self.jobs.get(job_id)
                    if current is None:
                        raise NotFoundError(f"job {job_id} not found")
                    try:
                        updated = mutator(current)
                    except AlreadyAcceptedError:
                        AppMetrics.acceptance_conflict()
                        AppMetrics.transition_rejected("AlreadyAcceptedError")
                        raise
                    except DispatchError as exc:
                        AppMetrics.transition_rejected(type(exc).__name__)
                        logger.warning(
                            f"{operation} rejected for job {job_id}: {exc.detail}",
                            extra={"job_id": job_id},
                        )
                        raise

                    if updated is current:
                        return current, current
                    try:
                        stored = await self.jobs.replace(updated, expected_version=current.version)
                    except StaleWriteError:
                        AppMetrics.write_conflict()
                        logger.warning(
                            f"{operation}: lost write on job {job_id} (attempt {attempt}), re-reading",
                            extra={"job_id": job_id},
                        )
                        continue
                    await self._after_write(current, stored)
                    return current, stored

        raise StaleWriteError(job_id, current.version)

    async def _after_write(self, before: Job, after: Job) -> None:
        """Side effects of a committed write.  Failures are logged, never raised."""
        transition = transition_between(before, after)
        if transition is not None:
            AppMetrics.job_transition(transition.value)
        if before.status == after.status:
            return

        if after.status == JobStatus.DELIVERED and after.agent_id:
            await self._record_outcome(after, delivered=True)
        elif after.status == JobStatus.FAILED and after.agent_id:
            await self._record_outcome(after, delivered=False)

        await self._notify_status(after)

    async def _notify_status(self, job: Job) -> None:
        template = None
        try:
            creator = await self.profiles.get_profile(job.creator_id)
            request = build_status_notification(job, creator)
            if request is None:
                return
            template = request.template_name
            await self.notifications.enqueue(request)
            AppMetrics.notification_enqueued(template)
        except Exception:
            AppMetrics.notification_failed(template or job.status.value)
            logger.error(
                f"Failed to enqueue {job.status.value} notification for job {job.id}",
                extra={"job_id": job.id},
                exc_info=True,
            )

    async def _record_outcome(self, job: Job, *, delivered: bool) -> None:
        try:
            await self.agents.record_outcome(job.agent_id, delivered, job.price if delivered else Decimal("0"))
        except Exception:
            AppMetrics.database_error("record_outcome")
            logger.error(
                f"Failed to update counters for agent {job.agent_id}",
                extra={"job_id": job.id, "agent_id": job.agent_id},
                exc_info=True,
            )

    def _now(self) -> datetime:
        return self._clock()

    def _obfuscate(self, point: Coordinates) -> Coordinates:
        return obfuscate_point(point, self.obfuscation_radius_m, self._rng)

    async def _require_approved_agent(self, agent_id: str) -> Agent:
        agent = await self.agents.get(agent_id)
        if agent is None:
            raise NotFoundError(f"agent {agent_id} not found")
        if not agent.is_approved:
            raise AgentNotApprovedError("agent is not approved for deliveries")
        return agent

    # ========================================================================
    # Creation & payment
    # ========================================================================

    async def create_job(self, creator_id: str, draft: JobDraft) -> Job:
        validate_draft(draft)
        now = self._now()
        job = Job(
            id=uuid.uuid4().hex,
            creator_id=creator_id,
            sender=draft.sender,
            receiver=draft.receiver,
            pickup=replace(draft.pickup, obfuscated_coordinates=self._obfuscate(draft.pickup.coordinates)),
            delivery=replace(draft.delivery, obfuscated_coordinates=self._obfuscate(draft.delivery.coordinates)),
            billing=draft.billing,
            scheduled_date=draft.scheduled_date,
            time_window=draft.time_window,
            package=draft.package,
            price=parse_price(draft.price),
            secret_code=generate_secret_code(),
            max_reschedules=draft.max_reschedules or self.default_max_reschedules,
            created_at=now,
            updated_at=now,
        )
        stored = await self.jobs.insert(job)
        AppMetrics.job_created()
        logger.info(
            f"Job {stored.id} created: {mask_coordinates(job.pickup.coordinates.lat, job.pickup.coordinates.lng)} -> "
            f"{mask_coordinates(job.delivery.coordinates.lat, job.delivery.coordinates.lng)}, price={job.price}",
            extra={"job_id": stored.id, "actor_id": creator_id},
        )
        return stored

    async def begin_payment(self, job_id: str, actor_id: str, *, is_admin: bool = False) -> CheckoutSession:
        """Payment step of job creation: request a checkout session and wait for it."""
        job = await self.jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"job {job_id} not found")
        if not is_admin and job.creator_id != actor_id:
            raise NotOwnerError("not owner")
        self.lifecycle.ensure_mutable(job, "prepaid")
        if job.phase != INITIAL_PHASE:
            raise IllegalTransitionError(job.phase, "prepaid", "job is already paid")
        return await self.payments.open_checkout(job)

    async def confirm_payment(self, job_id: str, payment_reference: str | None = None) -> Job:
        """Capture confirmed by the payment collaborator.  Repeated calls are no-ops."""

        def mutate(job: Job) -> Job:
            if not job.deleted and job.state != JobState.AWAITING_PREPAYMENT:
                return job
            return self.lifecycle.confirm_payment(job, payment_reference, now=self._now())

        before, after = await self._mutate(job_id, "confirm_payment", mutate)
        if before is not after:
            logger.info(f"Job {job_id}: payment confirmed", extra={"job_id": job_id})
        return after

    # ========================================================================
    # Matching
    # ========================================================================

    def _matches_agent(self, agent: Agent, job: Job) -> bool:
        return job_in_agent_range(
            agent.position, job.pickup.coordinates, job.delivery.coordinates, agent.delivery_range_km
        )

    async def find_available_jobs(self, agent_id: str) -> list[Job]:
        agent = await self._require_approved_agent(agent_id)
        open_jobs = await self.jobs.query(OPEN_JOBS_QUERY)
        matched = [j for j in open_jobs if self._matches_agent(agent, j)]
        logger.debug(
            f"Agent {agent_id}: {len(matched)}/{len(open_jobs)} open jobs within {agent.delivery_range_km} km",
            extra={"agent_id": agent_id},
        )
        return matched

    # ========================================================================
    # Agent-driven lifecycle
    # ========================================================================

    async def accept_job(self, job_id: str, agent_id: str) -> Job:
        await self._require_approved_agent(agent_id)
        _, job = await self._mutate(
            job_id, "accept", lambda j: self.lifecycle.accept(j, agent_id, now=self._now())
        )
        return job

    def _require_assigned(self, job: Job, agent_id: str, intended: Phase | str) -> None:
        self.lifecycle.ensure_mutable(job, intended)
        if job.agent_id != agent_id:
            raise NotAssignedAgentError("only the assigned agent can update this job")

    async def confirm_pickup(self, job_id: str, agent_id: str) -> Job:
        def mutate(job: Job) -> Job:
            self._require_assigned(job, agent_id, "picked_up")
            return self.lifecycle.confirm_pickup(job, now=self._now())

        _, job = await self._mutate(job_id, "confirm_pickup", mutate)
        return job

    async def reschedule(self, job_id: str, agent_id: str, reason: str | None = None) -> Job:
        _, job = await self._mutate(
            job_id,
            "reschedule",
            lambda j: self.reschedule_policy.reschedule(j, agent_id, reason, now=self._now()),
        )
        return job

    async def validate_delivery(self, job_id: str, agent_id: str, supplied_code: str) -> Job:
        def mutate(job: Job) -> Job:
            self._require_assigned(job, agent_id, "delivered")
            try:
                return self.handshake.validate(job, supplied_code, now=self._now())
            except InvalidSecretCodeError:
                AppMetrics.secret_code_mismatch()
                raise

        _, job = await self._mutate(job_id, "validate_delivery", mutate)
        return job

    # ========================================================================
    # Owner-driven changes
    # ========================================================================

    def permissions(self, job: Job | None, actor_id: str | None, *, is_admin: bool = False) -> Permissions:
        return permissions(job, actor_id, is_admin)

    async def get_permissions(self, job_id: str, actor_id: str | None, *, is_admin: bool = False) -> Permissions:
        return permissions(await self.jobs.get(job_id), actor_id, is_admin)

    def _apply_edit(self, job: Job, actor_id: str, edit: JobEdit, is_admin: bool) -> Job:
        require_edit(job, actor_id, is_admin)
        self.lifecycle.ensure_mutable(job, "edit")

        changes = edit.changes()
        if not changes:
            return job
        if "price" in changes:
            if job.state != JobState.AWAITING_PREPAYMENT:
                raise ValidationError("price can only be changed before payment")
            changes["price"] = parse_price(changes["price"])
        for name in ("pickup", "delivery"):
            if name in changes:
                point = changes[name].coordinates
                validate_coordinates(point.lat, point.lng)
                changes[name] = replace(changes[name], obfuscated_coordinates=self._obfuscate(point))
        if "billing" in changes:
            point = changes["billing"].coordinates
            validate_coordinates(point.lat, point.lng)

        return replace(job, updated_at=self._now(), **changes)

    async def edit_job(self, job_id: str, actor_id: str, edit: JobEdit, *, is_admin: bool = False) -> Job:
        _, job = await self._mutate(
            job_id, "edit", lambda j: self._apply_edit(j, actor_id, edit, is_admin)
        )
        return job

    async def delete_job(self, job_id: str, actor_id: str, *, is_admin: bool = False) -> Job:
        def mutate(job: Job) -> Job:
            require_delete(job, actor_id, is_admin)
            return self.lifecycle.soft_delete(job, actor_id, now=self._now())

        _, job = await self._mutate(job_id, "delete", mutate)
        return job

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_job(self, job_id: str, viewer_id: str | None = None, *, is_admin: bool = False) -> Job:
        job = await self.jobs.get(job_id)
        if job is None or (job.deleted and not is_admin and viewer_id != job.creator_id):
            raise NotFoundError(f"job {job_id} not found")
        return job

    async def _agent_names(self, jobs: list[Job]) -> dict[str, str]:
        ids = {j.agent_id for j in jobs if j.agent_id}
        if not ids:
            return {}
        agents = await self.agents.get_many(ids)
        return {agent_id: agent.display_name for agent_id, agent in agents.items()}

    async def describe_job(self, job_id: str, viewer_id: str | None, *, is_admin: bool = False) -> dict[str, Any]:
        job = await self.get_job(job_id, viewer_id, is_admin=is_admin)
        names = await self._agent_names([job])
        return job_view(job, viewer_id, is_admin=is_admin, agent_name=names.get(job.agent_id or ""))

    async def describe_jobs(self, jobs: list[Job], viewer_id: str | None, *, is_admin: bool = False) -> list[dict[str, Any]]:
        return job_views(jobs, viewer_id, is_admin=is_admin, agent_names=await self._agent_names(jobs))

    async def list_creator_jobs(self, creator_id: str, query: JobQuery | None = None) -> list[Job]:
        query = replace(query or JobQuery(), creator_id=creator_id, agent_id=None)
        return await self.jobs.query(query)

    async def list_agent_jobs(self, agent_id: str, query: JobQuery | None = None) -> list[Job]:
        query = replace(query or JobQuery(), agent_id=agent_id, creator_id=None)
        return await self.jobs.query(query)

    def quote(self, pickup: Coordinates, delivery: Coordinates, agent_location: Coordinates | None = None) -> PriceQuote:
        return estimate_price(pickup, delivery, agent_location, **self.pricing)

    # ========================================================================
    # Agents
    # ========================================================================

    async def register_agent(self, agent: Agent) -> Agent:
        validate_coordinates(agent.home_coordinates.lat, agent.home_coordinates.lng)
        stored = await self.agents.upsert(agent)
        logger.info(f"Agent {agent.id} registered ({agent.approval_status.value})", extra={"agent_id": agent.id})
        return stored

    async def get_agent(self, agent_id: str) -> Agent:
        agent = await self.agents.get(agent_id)
        if agent is None:
            raise NotFoundError(f"agent {agent_id} not found")
        return agent

    async def update_agent_location(self, agent_id: str, lat: float, lng: float) -> Agent:
        location = validate_coordinates(lat, lng)
        agent = await self.agents.update_location(agent_id, location, self._now())
        if agent is None:
            raise NotFoundError(f"agent {agent_id} not found")
        logger.debug(f"Agent {agent_id} at {mask_coordinates(lat, lng)}", extra={"agent_id": agent_id})
        return agent

    async def set_agent_activity(self, agent_id: str, activity: AgentActivity) -> Agent:
        agent = await self.agents.set_activity(agent_id, activity)
        if agent is None:
            raise NotFoundError(f"agent {agent_id} not found")
        return agent

    # ========================================================================
    # Live views
    # ========================================================================

    async def watch_job(
        self,
        job_id: str,
        viewer_id: str | None,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
        *,
        is_admin: bool = False,
        subscriptions: SubscriptionManager | None = None,
    ) -> Subscription:
        """Push the job's public view (``None`` once it no longer exists) on every change."""

        async def shape(job: Job | None) -> dict[str, Any] | None:
            if job is None or (job.deleted and not is_admin and viewer_id != job.creator_id):
                return None
            names = await self._agent_names([job])
            return job_view(job, viewer_id, is_admin=is_admin, agent_name=names.get(job.agent_id or ""))

        manager = subscriptions or self.subscriptions
        return await manager.subscribe(
            job_key(job_id), lambda: self.jobs.watch_one(job_id), on_change, on_error, shape
        )

    async def watch_creator_jobs(
        self,
        creator_id: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
        *,
        query: JobQuery | None = None,
        subscriptions: SubscriptionManager | None = None,
    ) -> Subscription:
        query = replace(query or JobQuery(), creator_id=creator_id, agent_id=None)
        manager = subscriptions or self.subscriptions
        return await manager.subscribe(
            creator_jobs_key(creator_id, query.signature()),
            lambda: self.jobs.watch(query),
            on_change,
            on_error,
            lambda jobs: self.describe_jobs(jobs, creator_id),
        )

    async def watch_agent_jobs(
        self,
        agent_id: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
        *,
        query: JobQuery | None = None,
        subscriptions: SubscriptionManager | None = None,
    ) -> Subscription:
        query = replace(query or JobQuery(), agent_id=agent_id, creator_id=None)
        manager = subscriptions or self.subscriptions
        return await manager.subscribe(
            agent_jobs_key(agent_id, query.signature()),
            lambda: self.jobs.watch(query),
            on_change,
            on_error,
            lambda jobs: self.describe_jobs(jobs, agent_id),
        )

    async def watch_available_jobs(
        self,
        agent_id: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
        *,
        subscriptions: SubscriptionManager | None = None,
    ) -> Subscription:
        """Open jobs within the agent's range, re-filtered on every change."""
        await self._require_approved_agent(agent_id)

        async def shape(open_jobs: list[Job]) -> list[dict[str, Any]]:
            # Location and range may have moved since subscribe
            agent = await self._require_approved_agent(agent_id)
            matched = [j for j in open_jobs if self._matches_agent(agent, j)]
            return job_views(matched, agent_id)

        manager = subscriptions or self.subscriptions
        return await manager.subscribe(
            available_jobs_key(agent_id), lambda: self.jobs.watch(OPEN_JOBS_QUERY), on_change, on_error, shape
        )

    async def close(self) -> None:
        await self.subscriptions.unsubscribe_all()
