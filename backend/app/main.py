# backend/app/main.py
from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from pydantic import BaseModel

from .core.config import settings
from .core.constants import BRAND_NAME
from .database import init_db
from .errors import register_error_handlers
from .routes import flow_integrity, prometheus
from .services.flow_integrity_engine import get_flow_integrity_engine

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


logger = logging.getLogger(__name__)

SCHEDULER_TICK_SECONDS = 5.0


async def _run_scheduler(stop: asyncio.Event) -> None:
    """Tick the engine's scheduler off the event loop until shutdown."""
    engine = get_flow_integrity_engine()
    while not stop.is_set():
        try:
            await asyncio.to_thread(engine.tick)
        except Exception:
            logger.exception("Flow integrity scheduler tick failed")
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=SCHEDULER_TICK_SECONDS)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown without deprecated events."""
    logger.info(
        "%s API starting up (environment=%s, enforcement=%s)",
        BRAND_NAME,
        settings.environment,
        settings.integrity_enforcement,
    )
    init_db()
    get_flow_integrity_engine()

    stop = asyncio.Event()
    scheduler_task: Optional[asyncio.Task[None]] = None
    if settings.run_in_process_scheduler:
        scheduler_task = asyncio.create_task(_run_scheduler(stop))

    yield

    logger.info("%s API shutting down...", BRAND_NAME)
    stop.set()
    if scheduler_task is not None:
        await scheduler_task


app = FastAPI(
    title=settings.app_name,
    description="Session, payment and video-call flow integrity for Smiling Steps",
    version="1.0.0",
    lifespan=app_lifespan,
)
register_error_handlers(app)

app.include_router(flow_integrity.router)
app.include_router(prometheus.router)


class LiveHealthResponse(BaseModel):
    ok: bool


@app.get("/live", response_model=LiveHealthResponse, tags=["health"])
def live_probe() -> LiveHealthResponse:
    """Liveness probe that avoids touching external dependencies."""
    return LiveHealthResponse(ok=True)
