"""FastAPI service for the ticket relay.

Receives Linear webhooks, exposes health and Prometheus metrics, and hosts
the Telegram bot for the lifetime of the process. Components are built once
at startup and shared across requests via ``app.state``.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from src.api.guard import verify_linear_webhook
from src.config import get_settings
from src.memory.scheduler import start_scheduler, stop_scheduler
from src.memory.store import get_initialized_connection
from src.observability.metrics import APP_INFO, COMPONENT_HEALTHY, REQUEST_DURATION, REQUESTS_TOTAL
from src.services import Services, build_services
from src.tracker.client import TrackerError

logger = logging.getLogger(__name__)

__version__ = "0.1.0"


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class ComponentHealth(BaseModel):
    """Health status of a single dependency."""

    name: str
    status: str
    detail: str | None = None


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    model: str
    components: list[ComponentHealth]


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


async def _run_bot(services: Services) -> None:
    if services.bot is None:
        return
    try:
        await services.bot.start()
    except Exception:
        logger.exception("Telegram bot failed to start")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store, build components and start the bot; tear down on shutdown."""
    settings = get_settings()
    APP_INFO.info({"version": __version__, "model": settings.active_model})

    conn = get_initialized_connection(settings.issue_db_path)
    try:
        services = build_services(settings, conn)
    except Exception:
        logger.exception("Failed to build services at startup")
        conn.close()
        raise
    app.state.services = services
    app.state.conn = conn

    bot_task = asyncio.create_task(_run_bot(services))
    start_scheduler(conn)
    yield
    stop_scheduler()
    if not bot_task.done():
        bot_task.cancel()
        with suppress(asyncio.CancelledError):
            await bot_task
    if services.bot is not None:
        try:
            await services.bot.stop()
        except Exception:
            logger.exception("Error while stopping the Telegram bot")
    conn.close()
    logger.info("Shutting down ticket relay")


app = FastAPI(title="Ticket Relay", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/webhooks/linear", response_class=PlainTextResponse)
async def linear_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    payload: dict[str, Any] = Depends(verify_linear_webhook),
) -> str:
    """Acknowledge a Linear delivery immediately and reconcile it in the background."""
    start = time.monotonic()
    services: Services = request.app.state.services
    background_tasks.add_task(services.reconciler.handle_event, payload)
    REQUESTS_TOTAL.labels(endpoint="/webhooks/linear", status="success").inc()
    REQUEST_DURATION.labels(endpoint="/webhooks/linear").observe(time.monotonic() - start)
    return "ok"


@app.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Check health of the relay and its dependencies."""
    settings = get_settings()
    services: Services = request.app.state.services
    components: list[ComponentHealth] = []

    # --- Linear ---
    try:
        body = await services.tracker.execute("{ viewer { id } }", "health")
        if body.get("errors"):
            components.append(ComponentHealth(name="linear", status="unhealthy", detail=str(body["errors"])[:200]))
        else:
            components.append(ComponentHealth(name="linear", status="healthy"))
    except TrackerError as exc:
        components.append(ComponentHealth(name="linear", status="unhealthy", detail=str(exc)))

    # --- Issue store ---
    try:
        _ = request.app.state.conn.execute("SELECT 1").fetchone()
        components.append(ComponentHealth(name="issue_store", status="healthy"))
    except Exception as exc:
        components.append(ComponentHealth(name="issue_store", status="unhealthy", detail=str(exc)))

    # --- Telegram ---
    if services.bot is not None:
        if services.bot.application.running:
            components.append(ComponentHealth(name="telegram", status="healthy"))
        else:
            components.append(ComponentHealth(name="telegram", status="unhealthy", detail="bot not running"))

    # --- Update Prometheus gauges ---
    for comp in components:
        COMPONENT_HEALTHY.labels(component=comp.name).set(1.0 if comp.status == "healthy" else 0.0)

    # --- Overall status ---
    healthy_count = sum(1 for c in components if c.status == "healthy")
    if healthy_count == len(components):
        overall = "healthy"
    elif healthy_count == 0:
        overall = "unhealthy"
    else:
        overall = "degraded"

    REQUESTS_TOTAL.labels(endpoint="/health", status="success").inc()
    return HealthResponse(status=overall, model=settings.active_model, components=components)


def run() -> None:
    """Console entry point: serve the API (and bot) with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)  # noqa: S104


if __name__ == "__main__":
    run()
