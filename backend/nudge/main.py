from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .deps import clock, decision_logger, engine, error_channel, monitor, scheduler
from .error_channel import ErrorChannelHandler
from .routes import decisions as decision_routes
from .routes import ingest as ingest_routes
from .routes import insights as insight_routes
from .routes import ops as ops_routes

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("nudge.backend")
error_channel_handler = ErrorChannelHandler(error_channel)
root_logger = logging.getLogger()
if not any(isinstance(handler, ErrorChannelHandler) for handler in root_logger.handlers):
    root_logger.addHandler(error_channel_handler)


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    await engine.hydrate()
    await monitor.recover(clock())
    if settings.scheduler_enabled:
        scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        drained = await decision_logger.drain(timeout_s=2.0)
        if not drained:
            logger.warning("Timed out while draining pending decision log writes.")
        drained = await monitor.drain(timeout_s=2.0)
        if not drained:
            logger.warning("Timed out while draining pending session writes.")


app = FastAPI(title="Nudge Decision Engine", version="0.1.0", lifespan=_lifespan)

if settings.allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(ingest_routes.router)
app.include_router(decision_routes.router)
app.include_router(insight_routes.router)
app.include_router(ops_routes.router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok"}


def run() -> None:
    import uvicorn

    uvicorn.run("nudge.main:app", host=settings.host, port=settings.port)
