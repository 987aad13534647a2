"""FastAPI entry-point exposing the agent team."""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from agent_team.api.routes import router as team_router
from agent_team.config import config, configure_logging
from agent_team.runtime import get_orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    configure_logging(config.log_level)
    orchestrator = get_orchestrator()
    await orchestrator.start()
    yield
    await orchestrator.stop()


app = FastAPI(title="Agent Team", lifespan=lifespan)
app.include_router(team_router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
