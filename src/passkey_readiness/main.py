"""
Main application module for the Passkey Readiness API.

This module sets up the FastAPI application with lifespan management,
database connections, background maintenance tasks and routing.
"""

import asyncio
from contextlib import asynccontextmanager
import time

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from prometheus_fastapi_instrumentator import Instrumentator
import uvicorn

from passkey_readiness.config import settings
from passkey_readiness.database import db_manager
from passkey_readiness.managers.logging_manager import get_logger, log_startup_banner, schedule_loki_ping
from passkey_readiness.managers.redis_manager import redis_manager
from passkey_readiness.routes import auth_router, main_router
from passkey_readiness.routes.auth import ceremony_error_handler, validation_error_handler
from passkey_readiness.routes.auth.dependencies import (
    challenge_registry,
    credential_store,
    event_sink,
    otp_ticket_store,
)
from passkey_readiness.routes.auth.periodics.cleanup import (
    periodic_challenge_cleanup,
    periodic_security_event_retention,
)
from passkey_readiness.routes.auth.services.errors import CeremonyError
from passkey_readiness.utils.logging_utils import (
    RequestLoggingMiddleware,
    log_application_lifecycle,
    log_error_with_context,
)

logger = get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """
    Application lifespan manager.

    Connects MongoDB and ensures indexes before serving, starts the maintenance
    loops, and on shutdown cancels them, waits for pending credential id
    migrations, and closes MongoDB and Redis.
    """
    startup_start_time = time.time()
    log_startup_banner()
    log_application_lifecycle(
        "startup_initiated",
        {
            "app_name": settings.APP_NAME,
            "environment": "production" if settings.is_production else "development",
            "rp_id": settings.RP_ID,
            "debug_mode": settings.DEBUG,
        },
    )

    try:
        await db_manager.connect()
        await db_manager.create_indexes()
    except Exception as e:
        log_application_lifecycle("startup_failed", {"error_type": type(e).__name__})
        log_error_with_context(e, {"operation": "application_startup", "phase": "database_connection"})
        raise

    schedule_loki_ping()
    background_tasks = {
        "challenge_cleanup": asyncio.create_task(periodic_challenge_cleanup(challenge_registry, otp_ticket_store)),
        "security_event_retention": asyncio.create_task(periodic_security_event_retention(event_sink)),
    }
    log_application_lifecycle(
        "startup_completed",
        {
            "total_startup_duration": f"{time.time() - startup_start_time:.3f}s",
            "background_tasks": list(background_tasks.keys()),
        },
    )

    yield

    log_application_lifecycle("shutdown_initiated", {"active_background_tasks": len(background_tasks)})
    for task in background_tasks.values():
        task.cancel()
    for task_name, task in background_tasks.items():
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except asyncio.CancelledError:
            logger.info("Background task %s cancelled successfully", task_name)
        except asyncio.TimeoutError:
            logger.warning("Background task %s cancellation timed out", task_name)

    await credential_store.wait_for_migrations()
    await redis_manager.close()
    await db_manager.disconnect()
    log_application_lifecycle("shutdown_completed")


app = FastAPI(
    title="Passkey Readiness API",
    description=(
        "Passkey registration and authentication ceremonies with an OTP fallback "
        "and an append-only security event trail."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_exception_handler(CeremonyError, ceremony_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)
app.include_router(main_router)
app.include_router(auth_router)
log_application_lifecycle("routers_configured", {"routers": ["main", "auth"]})

Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=False,
).instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")


if __name__ == "__main__":
    uvicorn.run("passkey_readiness.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG, log_level="info")
