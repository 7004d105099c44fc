"""
Admin API for the jobs platform.

Serves health checks and the workflow admin endpoints. The queue consumer
and workflow timers run in the worker process (app.jobs.worker); this
process only needs the database pool and Redis.
"""

import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.routes import health, workflows
from app.services.redis_client import fast_redis

setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)

# Opened in this order, closed in reverse
RESOURCES = (("database_pool", db_pool), ("redis", fast_redis))


async def _close_resources(names: list[str]) -> list[str]:
    errors = []
    for name, resource in reversed(RESOURCES):
        if name not in names:
            continue
        try:
            await resource.close()
        except Exception as e:
            logger.error("Error closing resource", resource=name, error=str(e))
            errors.append(f"{name}: {e}")
    return errors


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Admin API starting", environment=settings.environment, debug=settings.debug)

    opened: list[str] = []
    try:
        for name, resource in RESOURCES:
            await resource.initialize()
            opened.append(name)
    except Exception as e:
        logger.error("Failed to open resources", error=str(e), opened=opened)
        await _close_resources(opened)
        raise

    engine = workflows.get_workflow_engine()
    logger.info("Admin API ready", resources=opened, workflows=engine.workflow_names)

    yield

    logger.info("Admin API shutting down")
    errors = await _close_resources(opened)
    if errors:
        logger.warning("Some resources failed to close", errors=errors)


app = FastAPI(
    title="Nyuchi Platform Jobs",
    description="Admin surface for background jobs and durable workflows",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(workflows.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Tag each request with an id and log it with timing."""
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(request_id=request_id)
    start_time = time.perf_counter()
    try:
        response = await call_next(request)
    finally:
        structlog.contextvars.unbind_contextvars("request_id")

    response.headers["x-request-id"] = request_id
    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        request_id=request_id,
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
