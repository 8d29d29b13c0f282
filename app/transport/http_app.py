# app/transport/http_app.py
"""
HTTP / WebSocket surface of the dispatch engine.

Access layers:
1. Users: identified by the upstream gateway via ``X-Actor-Id``
2. Admin: ``Authorization: Bearer <ADMIN_TOKEN>`` (bypasses ownership, not lifecycle rules)
3. Collaborators: payment capture callback with ``PAYMENT_WEBHOOK_TOKEN``
4. Monitoring: ``/metrics`` and ``/health/detailed`` with ``METRICS_TOKEN``

Live views are WebSockets.  Each connection owns its own
``SubscriptionManager`` and tears it down on disconnect.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.websockets import WebSocketState

from app.config import settings
from app.core.dispatch.domain import agent_to_doc
from app.core.dispatch.engine import DispatchEngine
from app.core.dispatch.errors import DispatchError, PermissionDeniedError
from app.core.dispatch.lifecycle import JobState, JobStatus
from app.core.dispatch.ports import JobQuery
from app.core.dispatch.subscriptions import SubscriptionManager
from app.infra.health_checks_async import AsyncHealthChecker
from app.infra.logging_config import get_logger, setup_logging
from app.infra.metrics import get_metrics_collector
from app.infra.reminder_worker import ReminderWorker
from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from app.transport.schemas import (
    ActivityIn,
    AgentIn,
    DeliverIn,
    JobCreateIn,
    JobEditIn,
    LocationIn,
    PaymentConfirmIn,
    QuoteIn,
    RescheduleIn,
)
from app.transport.security import (
    Caller,
    SecurityHeaders,
    check_configured_tokens,
    get_caller,
    require_actor,
    require_actor_or_admin,
    require_admin_auth,
    require_metrics_auth,
    require_payment_webhook_auth,
    sanitize_error_message,
    websocket_caller,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# WIRING
# ============================================================================

def _engine_options() -> dict[str, Any]:
    return {
        "obfuscation_radius_m": settings.obfuscation_radius_m,
        "default_max_reschedules": settings.default_max_reschedules,
        "write_retry_attempts": settings.write_retry_attempts,
        "payment_timeout_seconds": settings.payment_timeout_seconds,
        "payment_currency": settings.payment_currency,
        "pricing": {
            "base_price": Decimal(str(settings.price_base)),
            "price_per_km": Decimal(str(settings.price_per_km)),
            "minimum_price": Decimal(str(settings.price_minimum)),
        },
    }


async def build_engine() -> tuple[DispatchEngine, AsyncHealthChecker]:
    """Construct the engine for ``STORAGE_BACKEND``."""
    if settings.storage_backend == "memory":
        from app.infra.memory_store import (
            InMemoryAgentStore,
            InMemoryCheckoutStore,
            InMemoryJobStore,
            InMemoryNotificationQueue,
            InMemoryProfileDirectory,
        )

        logger.warning("Using in-memory storage: data is lost on restart, checkouts are auto-approved")
        engine = DispatchEngine(
            InMemoryJobStore(),
            InMemoryAgentStore(),
            InMemoryProfileDirectory(),
            InMemoryCheckoutStore(auto_approve=True),
            InMemoryNotificationQueue(),
            subscriptions=SubscriptionManager("process"),
            **_engine_options(),
        )
        return engine, AsyncHealthChecker(checks=[])

    from app.infra.db_async import init_pool
    from app.infra.migrations_async import apply_migrations
    from app.infra.pg_agent_store_async import AsyncPostgresAgentStore, AsyncPostgresProfileDirectory
    from app.infra.pg_job_store_async import AsyncPostgresJobStore
    from app.infra.pg_outbox_async import AsyncPostgresCheckoutStore, AsyncPostgresNotificationQueue

    await init_pool()
    logger.info("Database pool initialized")

    result = await apply_migrations()
    logger.info(f"Migrations: applied={result['applied']}")

    engine = DispatchEngine(
        AsyncPostgresJobStore(),
        AsyncPostgresAgentStore(),
        AsyncPostgresProfileDirectory(),
        AsyncPostgresCheckoutStore(),
        AsyncPostgresNotificationQueue(),
        subscriptions=SubscriptionManager("process"),
        **_engine_options(),
    )
    return engine, AsyncHealthChecker()


def get_engine(request: Request) -> DispatchEngine:
    """Get engine from app state"""
    return request.app.state.engine


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(
        f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}, "
        f"storage={settings.storage_backend}"
    )

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

        if settings.log_level.upper() == "DEBUG":
            logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
            raise RuntimeError("LOG_LEVEL=DEBUG in production")

    check_configured_tokens()

    engine, health_checker = await build_engine()
    fastapi_app.state.engine = engine
    fastapi_app.state.health_checker = health_checker

    # Reminder sweep: only in "all" or "worker" mode to avoid duplicate sweeps
    reminder_worker = None
    if settings.run_mode in ("all", "worker") and settings.reminder_sweep_enabled:
        reminder_worker = ReminderWorker(
            engine.jobs,
            engine.profiles,
            engine.notifications,
            interval=settings.reminder_interval_seconds,
            lead_time=timedelta(minutes=settings.reminder_lead_time_minutes),
        )
        await reminder_worker.start()
    else:
        logger.info(
            f"Reminder worker skipped (run_mode={settings.run_mode}, "
            f"enabled={settings.reminder_sweep_enabled})"
        )
    fastapi_app.state.reminder_worker = reminder_worker

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    if reminder_worker is not None:
        await reminder_worker.stop()

    await engine.close()

    if settings.storage_backend == "postgres":
        from app.infra.db_async import close_pool
        await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Dispatch Engine",
    description="Delivery job dispatch and lifecycle service",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Actor-Id"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Domain errors carry their own HTTP status"""
    if exc.status_code >= 500:
        logger.error(f"Dispatch error: {exc.detail}", extra={"status_code": exc.status_code})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={"error": sanitize_error_message(exc, settings.is_production)},
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness check.  Returns minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness(request: Request):
    """Readiness check: critical checks only."""
    result = await request.app.state.health_checker.run_checks(include_non_critical=False)

    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})

    return {"status": "healthy"}


@app.post("/quotes")
async def create_quote(payload: QuoteIn, engine: DispatchEngine = Depends(get_engine)):
    """Advisory distance-based price; never stored."""
    agent_location = payload.agent_location.to_domain() if payload.agent_location else None
    quote = engine.quote(payload.pickup.to_domain(), payload.delivery.to_domain(), agent_location)
    return quote.to_dict()


# ============================================================================
# MONITORING ENDPOINTS (METRICS_TOKEN or ADMIN_TOKEN)
# ============================================================================

@app.get("/health/detailed", dependencies=[Depends(require_metrics_auth)])
async def detailed_health(request: Request):
    return await request.app.state.health_checker.run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    return get_metrics_collector().get_metrics()


# ============================================================================
# JOBS
# ============================================================================

@app.post("/jobs", status_code=201)
async def create_job(
    payload: JobCreateIn,
    caller: Caller = Depends(require_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    job = await engine.create_job(caller.actor_id, payload.to_domain())
    return await engine.describe_job(job.id, caller.actor_id, is_admin=caller.is_admin)


@app.get("/jobs")
async def list_jobs(
    role: str = Query(default="creator", pattern="^(creator|agent)$"),
    status: list[JobStatus] | None = Query(default=None),
    state: list[JobState] | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=200),
    caller: Caller = Depends(require_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    query = JobQuery(statuses=tuple(status or ()), states=tuple(state or ()), limit=limit)
    if role == "agent":
        jobs = await engine.list_agent_jobs(caller.actor_id, query)
    else:
        jobs = await engine.list_creator_jobs(caller.actor_id, query)
    return {"jobs": await engine.describe_jobs(jobs, caller.actor_id, is_admin=caller.is_admin)}


@app.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    caller: Caller = Depends(get_caller),
    engine: DispatchEngine = Depends(get_engine),
):
    return await engine.describe_job(job_id, caller.actor_id, is_admin=caller.is_admin)


@app.patch("/jobs/{job_id}")
async def edit_job(
    job_id: str,
    payload: JobEditIn,
    caller: Caller = Depends(require_actor_or_admin),
    engine: DispatchEngine = Depends(get_engine),
):
    job = await engine.edit_job(job_id, caller.acting_id, payload.to_domain(), is_admin=caller.is_admin)
    return await engine.describe_job(job.id, caller.actor_id, is_admin=caller.is_admin)


@app.delete("/jobs/{job_id}")
async def delete_job(
    job_id: str,
    caller: Caller = Depends(require_actor_or_admin),
    engine: DispatchEngine = Depends(get_engine),
):
    job = await engine.delete_job(job_id, caller.acting_id, is_admin=caller.is_admin)
    return {"id": job.id, "deleted": job.deleted}


@app.get("/jobs/{job_id}/permissions")
async def job_permissions(
    job_id: str,
    caller: Caller = Depends(get_caller),
    engine: DispatchEngine = Depends(get_engine),
):
    perms = await engine.get_permissions(job_id, caller.actor_id, is_admin=caller.is_admin)
    return perms.to_dict()


# ============================================================================
# PAYMENT
# ============================================================================

@app.post("/jobs/{job_id}/checkout")
async def begin_checkout(
    job_id: str,
    caller: Caller = Depends(require_actor_or_admin),
    engine: DispatchEngine = Depends(get_engine),
):
    session = await engine.begin_payment(job_id, caller.acting_id, is_admin=caller.is_admin)
    return {
        "session_id": session.id,
        "client_secret": session.client_secret,
        "amount_minor": session.amount_minor,
        "currency": session.currency,
    }


@app.post("/payments/confirm", dependencies=[Depends(require_payment_webhook_auth)])
async def confirm_payment(payload: PaymentConfirmIn, engine: DispatchEngine = Depends(get_engine)):
    job = await engine.confirm_payment(payload.job_id, payload.payment_reference)
    return {"id": job.id, "status": job.status.value, "state": job.state.value}


# ============================================================================
# AGENT ACTIONS
# ============================================================================

def _require_self_or_admin(caller: Caller, agent_id: str) -> None:
    if not caller.is_admin and caller.actor_id != agent_id:
        raise PermissionDeniedError("agents can only act for themselves")


@app.put("/agents/{agent_id}", dependencies=[Depends(require_admin_auth)])
async def register_agent(agent_id: str, payload: AgentIn, engine: DispatchEngine = Depends(get_engine)):
    agent = await engine.register_agent(payload.to_domain(agent_id, settings.default_delivery_range_km))
    return agent_to_doc(agent)


@app.get("/agents/{agent_id}")
async def get_agent(
    agent_id: str,
    caller: Caller = Depends(require_actor_or_admin),
    engine: DispatchEngine = Depends(get_engine),
):
    _require_self_or_admin(caller, agent_id)
    return agent_to_doc(await engine.get_agent(agent_id))


@app.put("/agents/{agent_id}/location")
async def update_agent_location(
    agent_id: str,
    payload: LocationIn,
    caller: Caller = Depends(require_actor_or_admin),
    engine: DispatchEngine = Depends(get_engine),
):
    _require_self_or_admin(caller, agent_id)
    agent = await engine.update_agent_location(agent_id, payload.lat, payload.lng)
    return agent_to_doc(agent)


@app.put("/agents/{agent_id}/activity")
async def set_agent_activity(
    agent_id: str,
    payload: ActivityIn,
    caller: Caller = Depends(require_actor_or_admin),
    engine: DispatchEngine = Depends(get_engine),
):
    _require_self_or_admin(caller, agent_id)
    agent = await engine.set_agent_activity(agent_id, payload.active_status)
    return agent_to_doc(agent)


@app.get("/agents/{agent_id}/available-jobs")
async def available_jobs(
    agent_id: str,
    caller: Caller = Depends(require_actor_or_admin),
    engine: DispatchEngine = Depends(get_engine),
):
    _require_self_or_admin(caller, agent_id)
    jobs = await engine.find_available_jobs(agent_id)
    return {"jobs": await engine.describe_jobs(jobs, agent_id)}


@app.post("/jobs/{job_id}/accept")
async def accept_job(
    job_id: str,
    caller: Caller = Depends(require_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    job = await engine.accept_job(job_id, caller.actor_id)
    return await engine.describe_job(job.id, caller.actor_id)


@app.post("/jobs/{job_id}/pickup")
async def confirm_pickup(
    job_id: str,
    caller: Caller = Depends(require_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    job = await engine.confirm_pickup(job_id, caller.actor_id)
    return await engine.describe_job(job.id, caller.actor_id)


@app.post("/jobs/{job_id}/reschedule")
async def reschedule_job(
    job_id: str,
    payload: RescheduleIn,
    caller: Caller = Depends(require_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    job = await engine.reschedule(job_id, caller.actor_id, payload.reason)
    return await engine.describe_job(job.id, caller.actor_id)


@app.post("/jobs/{job_id}/deliver")
async def deliver_job(
    job_id: str,
    payload: DeliverIn,
    caller: Caller = Depends(require_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    job = await engine.validate_delivery(job_id, caller.actor_id, payload.secret_code)
    return await engine.describe_job(job.id, caller.actor_id)


# ============================================================================
# LIVE VIEWS (WebSocket)
# ============================================================================

LiveViewStarter = Callable[[SubscriptionManager, Callable, Callable], Awaitable[Any]]


async def _drain(websocket: WebSocket) -> None:
    """Read (and ignore) client frames until the client goes away."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


def _is_open(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


async def _serve_live_view(websocket: WebSocket, name: str, start: LiveViewStarter) -> None:
    await websocket.accept()
    manager = SubscriptionManager(name)
    failed = asyncio.Event()

    async def push(payload: Any) -> None:
        if _is_open(websocket):
            await websocket.send_json({"type": "snapshot", "data": payload})

    async def fail(exc: BaseException) -> None:
        failed.set()

    try:
        await start(manager, push, fail)
    except DispatchError as exc:
        manager.close_all()
        await websocket.send_json({"type": "error", "error": exc.detail})
        await websocket.close(code=1008)
        return

    receiver = asyncio.create_task(_drain(websocket))
    watcher = asyncio.create_task(failed.wait())
    try:
        done, _ = await asyncio.wait({receiver, watcher}, return_when=asyncio.FIRST_COMPLETED)
        if watcher in done and _is_open(websocket):
            await websocket.send_json({"type": "error", "error": "live view interrupted"})
            await websocket.close(code=1011)
    except (WebSocketDisconnect, RuntimeError):
        logger.debug(f"[{name}] client went away while closing")
    finally:
        # Stop every task before the first await
        receiver.cancel()
        watcher.cancel()
        pumps = manager.close_all()
        await asyncio.gather(receiver, watcher, *pumps, return_exceptions=True)


@app.websocket("/ws/jobs/{job_id}")
async def ws_job(websocket: WebSocket, job_id: str):
    caller = websocket_caller(websocket)
    engine: DispatchEngine = websocket.app.state.engine

    async def start(manager, push, fail):
        await engine.watch_job(
            job_id, caller.actor_id, push, fail, is_admin=caller.is_admin, subscriptions=manager
        )

    await _serve_live_view(websocket, f"ws:job:{job_id}", start)


@app.websocket("/ws/jobs")
async def ws_my_jobs(websocket: WebSocket, role: str = "creator"):
    caller = websocket_caller(websocket)
    engine: DispatchEngine = websocket.app.state.engine
    if not caller.actor_id:
        await websocket.close(code=1008)
        return

    async def start(manager, push, fail):
        if role == "agent":
            await engine.watch_agent_jobs(caller.actor_id, push, fail, subscriptions=manager)
        else:
            await engine.watch_creator_jobs(caller.actor_id, push, fail, subscriptions=manager)

    await _serve_live_view(websocket, f"ws:{role}:{caller.actor_id}", start)


@app.websocket("/ws/available")
async def ws_available(websocket: WebSocket):
    caller = websocket_caller(websocket)
    engine: DispatchEngine = websocket.app.state.engine
    if not caller.actor_id:
        await websocket.close(code=1008)
        return

    async def start(manager, push, fail):
        await engine.watch_available_jobs(caller.actor_id, push, fail, subscriptions=manager)

    await _serve_live_view(websocket, f"ws:available:{caller.actor_id}", start)


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def catch_all(path: str):
    """Generic 404 without revealing information."""
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
