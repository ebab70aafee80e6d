import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from payguard.db import engine
from payguard.errors import install_error_handlers
from payguard.logging_utils import setup_json_logging
from payguard.routers import admin, changes, employees
from payguard.services.maintenance import maintenance_worker_loop
from payguard.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from payguard.settings import get_cors_origins, get_settings, is_smtp_configured

settings = get_settings()
setup_json_logging(settings.log_level.upper())
logger = logging.getLogger("payguard.request")
startup_logger = logging.getLogger("payguard.startup")


async def check_schema_and_start_worker(app: FastAPI) -> None:
    guard = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = guard
    if not guard.ok:
        startup_logger.error("schema_guard_failed", extra=guard.to_dict())
        if settings.schema_guard_strict:
            raise RuntimeError("Runtime schema guard failed: " + "; ".join(guard.issues))
    else:
        startup_logger.info("schema_guard_ok", extra=guard.to_dict())

    if not is_smtp_configured():
        startup_logger.warning("notification_email_channel_not_configured")
    if not settings.payroll_worker_enabled or getattr(app.state, "worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    app.state.worker_stop_event = stop_event
    app.state.worker_task = asyncio.create_task(
        maintenance_worker_loop(stop_event, interval_seconds=settings.payroll_worker_interval_seconds)
    )
    startup_logger.info(
        "maintenance_worker_started",
        extra={
            "interval_seconds": settings.payroll_worker_interval_seconds,
            "payroll_run_days": settings.payroll_run_days,
            "payroll_run_hour": settings.payroll_run_hour,
        },
    )


async def stop_worker(app: FastAPI) -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.worker_stop_event = None
    app.state.worker_task = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    await check_schema_and_start_worker(app)
    try:
        yield
    finally:
        await stop_worker(app)


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handlers(app)
app.include_router(changes.router)
app.include_router(employees.router)
app.include_router(admin.router)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = "system"
    request.state.actor_id = "system"

    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "latency_ms": round((time.perf_counter() - started) * 1000, 2),
                "actor": request.state.actor,
                "actor_id": request.state.actor_id,
                "employee_id": getattr(request.state, "employee_id", None),
            },
        )


@app.get("/health")
def health() -> dict[str, Any]:
    guard: SchemaGuardResult | None = getattr(app.state, "schema_guard_result", None)
    if guard is None:
        guard = SchemaGuardResult(
            ok=False,
            checked_at_utc=datetime.now(timezone.utc),
            issues=["SCHEMA_GUARD_NOT_RUN"],
        )
    return {
        "status": "ok",
        "schema_guard": guard.to_dict(),
        "email_channel_configured": is_smtp_configured(),
        "verdict_service_configured": bool((settings.verdict_service_url or "").strip()),
    }
