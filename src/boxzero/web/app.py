"""FastAPI application for the BoxZero review API.

Creates the FastAPI app with:
- Lifespan context manager for dependency initialization
- The JSON API router

Prediction cycles are driven by the caller (see TriageEngine.run_cycle);
the app only exposes the review queue, trust profiles and sender ranking.

Usage:
    from boxzero.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from boxzero.core.logging import get_logger

if TYPE_CHECKING:
    from boxzero.engine.triage import TriageEngine

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup (skipped when create_app() was given an engine):
    1. Load config
    2. Initialize database
    3. Create the Anthropic client when ANTHROPIC_API_KEY is set
    4. Build the triage engine and load persisted state

    On shutdown:
    - Checkpoint the WAL and close the Anthropic client
    """
    if getattr(app.state, "triage_engine", None) is not None:
        yield
        return

    from boxzero.config import get_config
    from boxzero.core.errors import BoxZeroError
    from boxzero.db.store import DatabaseStore
    from boxzero.engine.triage import build_engine
    from boxzero.predictors.llm import create_anthropic_client

    # 1. Load config
    try:
        config = get_config()
    except BoxZeroError as e:
        logger.error("config_load_failed", error=str(e))
        app.state.config = None
        app.state.store = None
        app.state.triage_engine = None
        yield
        return

    app.state.config = config

    # 2. Initialize database
    store = DatabaseStore(config.storage.db_path)
    await store.initialize()
    app.state.store = store

    # 3. Anthropic client (Tier 3 is disabled without a key)
    anthropic_client = None
    if os.environ.get("ANTHROPIC_API_KEY"):
        anthropic_client = create_anthropic_client(config.llm)
    else:
        logger.warning("anthropic_api_key_missing", tier3="disabled")

    # 4. Triage engine
    engine = build_engine(config, store, anthropic_client)
    await engine.load_state()
    app.state.triage_engine = engine
    logger.info("app_started", db_path=config.storage.db_path, tier3_enabled=anthropic_client is not None)

    yield

    # Shutdown
    await store.checkpoint_wal()
    if anthropic_client is not None:
        await anthropic_client.close()
    logger.info("app_stopped")


def create_app(engine: TriageEngine | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        engine: Pre-built engine; when given, its store and config are used
            and the lifespan does no initialization

    Returns:
        Configured FastAPI instance
    """
    from boxzero import __version__
    from boxzero.web.routes import api_router

    app = FastAPI(
        title="BoxZero",
        description="Email triage prediction engine review API",
        version=__version__,
        lifespan=lifespan,
    )

    if engine is not None:
        app.state.triage_engine = engine
        app.state.store = engine.store
        app.state.config = engine.config

    app.include_router(api_router)

    return app
