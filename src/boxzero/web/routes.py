"""JSON API routes for the BoxZero review queue.

- queue: list pending items, approve (optionally with a different action),
  reject, and report execution results
- trust: stage table and per-user profiles
- senders: ranked sender importance
- behavior: record a user action against a sender
- health and audit log

All routes use FastAPI dependency injection to access shared state.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from boxzero.behavior.sender_model import EventType, build_behavior_context
from boxzero.config_schema import TRUST_STAGE_ORDER, AppConfig
from boxzero.core.errors import DatabaseError, InvalidTransitionError, QueueItemNotFoundError
from boxzero.core.logging import get_logger
from boxzero.db.store import DatabaseStore
from boxzero.engine.triage import TriageEngine
from boxzero.predictors.types import ActionType
from boxzero.web.dependencies import get_config, get_store, get_triage_engine

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class ApproveRequest(BaseModel):
    """Request body for approving a queue item, optionally with a different action."""

    modified_action: ActionType | None = None


class FailedRequest(BaseModel):
    """Request body for reporting a failed execution."""

    error_message: str = Field(min_length=1)


class BehaviorRequest(BaseModel):
    """Request body for recording a user action on an email."""

    user_id: str
    email_id: str
    sender_email: str
    event_type: EventType
    account_id: str = ""
    thread_id: str | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    body: str = ""
    attachment_count: int = Field(default=0, ge=0)
    thread_depth: int = Field(default=1, ge=0)
    recipient_count: int = Field(default=1, ge=0)


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


async def _transition(engine: TriageEngine, item_id: str, operation: Any, *args: Any) -> dict[str, Any]:
    """Run a queue transition and map domain errors to HTTP status codes."""
    try:
        item = await operation(item_id, *args)
    except QueueItemNotFoundError:
        raise HTTPException(status_code=404, detail="Queue item not found") from None
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    except DatabaseError as e:
        logger.error("queue_transition_failed", item_id=item_id, error=str(e))
        raise HTTPException(status_code=500, detail="Database error") from None
    return item.to_dict()


@api_router.get("/queue")
async def list_queue(
    status: str | None = Query(default="pending"),
    user_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    store: DatabaseStore = Depends(get_store),
):
    """Queue items, most confident first."""
    items = await store.list_queue_items(status=status or None, user_id=user_id, limit=limit)
    return {"items": [item.to_dict() for item in items], "count": len(items)}


@api_router.get("/queue/{item_id}")
async def get_queue_item(item_id: str, store: DatabaseStore = Depends(get_store)):
    item = await store.get_queue_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Queue item not found")
    return item.to_dict()


@api_router.post("/queue/{item_id}/approve")
async def approve_item(
    item_id: str,
    body: ApproveRequest | None = None,
    engine: TriageEngine = Depends(get_triage_engine),
):
    """Approve a pending item; a modified_action counts as a 'modified' outcome."""
    modified_action = body.modified_action if body else None
    outcome = "modified" if modified_action else "approved"
    return await _transition(engine, item_id, engine.resolve_item, outcome, modified_action)


@api_router.post("/queue/{item_id}/reject")
async def reject_item(item_id: str, engine: TriageEngine = Depends(get_triage_engine)):
    return await _transition(engine, item_id, engine.resolve_item, "rejected")


@api_router.post("/queue/{item_id}/executed")
async def item_executed(item_id: str, engine: TriageEngine = Depends(get_triage_engine)):
    return await _transition(engine, item_id, engine.mark_executed)


@api_router.post("/queue/{item_id}/failed")
async def item_failed(
    item_id: str,
    body: FailedRequest,
    engine: TriageEngine = Depends(get_triage_engine),
):
    return await _transition(engine, item_id, engine.mark_failed, body.error_message)


# ---------------------------------------------------------------------------
# Trust
# ---------------------------------------------------------------------------


@api_router.get("/trust/stages")
async def trust_stages(config: AppConfig = Depends(get_config)):
    """The stage table: requirements to leave each stage and its threshold."""
    return {
        "stages": [
            {"name": name, **config.trust.stages[name].model_dump()}
            for name in TRUST_STAGE_ORDER
        ]
    }


@api_router.get("/trust/{user_id}")
async def trust_profile(user_id: str, engine: TriageEngine = Depends(get_triage_engine)):
    profile = engine.trust.get(user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="No trust profile for this user")
    data = profile.to_dict()
    data["approval_rate"] = profile.approval_rate
    return data


# ---------------------------------------------------------------------------
# Senders and behavior
# ---------------------------------------------------------------------------


@api_router.get("/senders")
async def top_senders(
    limit: int = Query(default=10, ge=1, le=500),
    engine: TriageEngine = Depends(get_triage_engine),
):
    """Senders ranked by time-decayed importance."""
    senders = engine.behavior.rank(limit=limit)
    return {
        "senders": [
            {**model.to_dict(), "should_be_vip": engine.behavior.should_be_vip(model)}
            for model in senders
        ]
    }


@api_router.post("/behavior")
async def record_behavior(body: BehaviorRequest, engine: TriageEngine = Depends(get_triage_engine)):
    """Record a user action and fold it into the sender's model."""
    context = build_behavior_context(
        datetime.now(UTC),
        body=body.body,
        attachment_count=body.attachment_count,
        thread_depth=body.thread_depth,
        recipient_count=body.recipient_count,
    )
    event = await engine.record_behavior(
        body.user_id,
        body.email_id,
        body.sender_email,
        body.event_type,
        context_features=context,
        account_id=body.account_id,
        thread_id=body.thread_id,
        duration_ms=body.duration_ms,
    )
    return event.to_dict()


# ---------------------------------------------------------------------------
# Health and audit
# ---------------------------------------------------------------------------


@api_router.get("/audit")
async def audit_log(
    limit: int = Query(default=100, ge=1, le=1000),
    email_id: str | None = None,
    action_type: str | None = None,
    store: DatabaseStore = Depends(get_store),
):
    entries = await store.get_action_logs(limit=limit, email_id=email_id, action_type=action_type)
    return {
        "entries": [
            {**asdict(entry), "timestamp": entry.timestamp.isoformat()} for entry in entries
        ]
    }


@api_router.get("/health")
async def health_check(
    store: DatabaseStore = Depends(get_store),
    engine: TriageEngine = Depends(get_triage_engine),
):
    """Health check endpoint for Docker and monitoring."""
    from boxzero import __version__

    last_cycle = await store.get_state("last_triage_cycle")
    counts = await store.count_queue_items_by_status()
    stats = engine.ensemble.stats()

    return {
        "status": "healthy",
        "last_triage_cycle": last_cycle,
        "pending_items": counts.get("pending", 0),
        "tier3_enabled": stats["tier3_enabled"],
        "cache_size": stats["cache_size"],
        "version": __version__,
    }
