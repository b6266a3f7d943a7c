"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan (or by
create_app() when passed in explicitly) and stored on app.state.

Usage:
    from boxzero.web.dependencies import get_store

    @api_router.get("/queue")
    async def list_queue(store: DatabaseStore = Depends(get_store)):
        items = await store.list_queue_items(status="pending")
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from boxzero.config_schema import AppConfig
    from boxzero.db.store import DatabaseStore
    from boxzero.engine.triage import TriageEngine


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    return store


def get_config(request: Request) -> AppConfig:
    """Get the current AppConfig from app state."""
    return request.app.state.config


def get_triage_engine(request: Request) -> TriageEngine:
    """Get the TriageEngine from app state."""
    engine = getattr(request.app.state, "triage_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Triage engine not initialized")
    return engine
