"""FastAPI entry-point exposing the lead pipeline."""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST

from leadflow.api.agents import router as agents_router
from leadflow.api.leads import router as leads_router
from leadflow.config import config, configure_logging
from leadflow.observability import metrics
from leadflow.runtime import get_system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    configure_logging(config.log_level)
    system = get_system()
    await system.initialize()
    yield
    await system.shutdown()


app = FastAPI(title="Leadflow", lifespan=lifespan)
app.include_router(leads_router)
app.include_router(agents_router)


@app.get("/health")
async def health() -> dict:
    system = get_system()
    return {"status": "ok" if system.is_ready() else "starting", "environment": config.environment}


@app.get("/metrics")
async def prometheus_metrics() -> Response:
    return Response(content=metrics.export_latest(), media_type=CONTENT_TYPE_LATEST)
