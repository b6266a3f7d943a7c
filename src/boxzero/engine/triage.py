"""Triage engine: one prediction cycle over a batch of emails.

Wraps the dispatcher with the persistence the predictors do not do
themselves:

1. Generate triage_cycle_id and set it as the correlation ID
2. Predict the batch; for every auto-executed action, snapshot the
   pre-action state for undo, run the caller's callback, then write an
   'auto_executed' audit entry
3. Persist queued items (including failed auto-executions)
4. Expire pending items older than queue.expire_after_days
5. Prune LLM logs and expired undo snapshots
6. Persist sender models and trust profiles

Per-item storage failures are logged and the cycle continues.

Usage:
    from boxzero.engine.triage import build_engine

    engine = build_engine(config, store, anthropic_client)
    await engine.load_state()
    result = await engine.run_cycle(emails, "u1", execute)
    await engine.resolve_item(item_id, "approved")
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from boxzero.behavior.sender_model import SenderBehaviorModel
from boxzero.behavior.trust import TrustRegistry
from boxzero.core.errors import DatabaseError, QueueItemNotFoundError
from boxzero.core.logging import correlation_scope, get_logger
from boxzero.db.repository import SqliteRepository
from boxzero.predictors.bayesian import Tier1Predictor
from boxzero.predictors.ensemble import EnsemblePredictor
from boxzero.predictors.llm import Tier3Predictor
from boxzero.queue.dispatcher import ActionDispatcher

if TYPE_CHECKING:
    import anthropic

    from boxzero.behavior.sender_model import BehaviorEvent, ContextFeatures, EventType
    from boxzero.behavior.trust import Outcome
    from boxzero.config_schema import AppConfig
    from boxzero.db.store import DatabaseStore
    from boxzero.predictors.types import ActionType, EmailMessage
    from boxzero.queue.actions import ActionQueueItem
    from boxzero.queue.dispatcher import ExecuteCallback

logger = get_logger(__name__)

# Repository namespaces in the records table
BEHAVIOR_NAMESPACE = "behavior"
TRUST_NAMESPACE = "trust"


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class TriageCycleResult:
    """Result of a single triage cycle."""

    cycle_id: str
    duration_ms: int = 0
    emails_received: int = 0
    predicted: int = 0
    auto_executed: int = 0
    queued: int = 0
    failures: int = 0
    items_expired: int = 0
    logs_pruned: int = 0
    snapshots_pruned: int = 0


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TriageEngine:
    """Runs prediction cycles and resolves queue items.

    Each cycle generates a UUID4 triage_cycle_id for log correlation.
    All log entries within a cycle share this ID, including the Tier-3
    request log rows.

    Attributes:
        ensemble: The ensemble predictor
        behavior: Sender behavior models
        trust: Per-user trust profiles
    """

    def __init__(
        self,
        store: DatabaseStore,
        ensemble: EnsemblePredictor,
        behavior: SenderBehaviorModel,
        trust: TrustRegistry,
        config: AppConfig,
        dispatcher: ActionDispatcher | None = None,
    ):
        self._store = store
        self.ensemble = ensemble
        self.behavior = behavior
        self.trust = trust
        self._config = config
        self._dispatcher = dispatcher or ActionDispatcher(ensemble, behavior)
        self._behavior_repo = SqliteRepository(store, BEHAVIOR_NAMESPACE)
        self._trust_repo = SqliteRepository(store, TRUST_NAMESPACE)

    @property
    def store(self) -> DatabaseStore:
        return self._store

    @property
    def config(self) -> AppConfig:
        return self._config

    def update_config(self, config: AppConfig) -> None:
        """Apply a reloaded config to the engine and its ensemble."""
        self._config = config
        self.ensemble.update_config(**config.ensemble.model_dump())

    async def load_state(self) -> None:
        """Load sender models and trust profiles from the database."""
        await self.behavior.load(self._behavior_repo)
        await self.trust.load(self._trust_repo)

    async def save_state(self) -> None:
        await self.behavior.save(self._behavior_repo)
        await self.trust.save(self._trust_repo)

    async def run_cycle(
        self,
        emails: Sequence[EmailMessage],
        user_id: str,
        execute_callback: ExecuteCallback,
        force_refresh: bool = False,
    ) -> TriageCycleResult:
        """Execute a single triage cycle.

        Args:
            emails: Emails to triage
            user_id: User the predictions are for
            execute_callback: Performs an action on the mail store
            force_refresh: Reprocess emails seen in an earlier cycle

        Returns:
            TriageCycleResult with counts and timing
        """
        with correlation_scope(str(uuid.uuid4())) as cycle_id:
            start_time = time.monotonic()
            result = TriageCycleResult(cycle_id=cycle_id, emails_received=len(emails))
            logger.info("triage_cycle_start", user_id=user_id, emails=len(emails))

            try:
                by_id = {email.id: email for email in emails}

                async def execute_with_audit(email_id: str, action: ActionType) -> None:
                    await self._execute_with_audit(by_id[email_id], user_id, action, execute_callback)

                dispatch = await self._dispatcher.process_auto_actions(
                    emails, user_id, execute_with_audit, force_refresh=force_refresh
                )
                result.predicted = len(dispatch.predictions)
                result.auto_executed = len(dispatch.auto_executed)
                result.failures = len(dispatch.failures)

                for item in dispatch.queued:
                    try:
                        await self._store.save_queue_item(item)
                        result.queued += 1
                    except DatabaseError as e:
                        logger.warning("queue_item_persist_failed", item_id=item.id, error=str(e))

                result.items_expired = await self._expire_stale_items()
                await self._run_maintenance(result)

                try:
                    await self.save_state()
                except DatabaseError as e:
                    logger.warning("state_persist_failed", error=str(e))

                await self._store.set_state("last_triage_cycle", datetime.now(UTC).isoformat())
                await self._store.set_state("last_triage_cycle_id", cycle_id)

            except DatabaseError as e:
                logger.error("triage_cycle_error", error=str(e), error_type=type(e).__name__)
            finally:
                result.duration_ms = int((time.monotonic() - start_time) * 1000)
                logger.info(
                    "triage_cycle_complete",
                    duration_ms=result.duration_ms,
                    emails_received=result.emails_received,
                    predicted=result.predicted,
                    auto_executed=result.auto_executed,
                    queued=result.queued,
                    failures=result.failures,
                    items_expired=result.items_expired,
                    logs_pruned=result.logs_pruned,
                )

            await self._store.checkpoint_wal()
            return result

    async def _execute_with_audit(
        self,
        email: EmailMessage,
        user_id: str,
        action: ActionType,
        execute_callback: ExecuteCallback,
    ) -> None:
        """Snapshot, execute, then audit one auto-executed action.

        A failed snapshot aborts the execution (the dispatcher then queues
        the item); a failed audit write after execution is only logged.
        """
        prediction = self.ensemble.cache.get(user_id, email.id)
        prediction_id = prediction.prediction_id if prediction else None

        await self._store.save_undo_snapshot(
            email_id=email.id,
            snapshot={
                "account_id": email.account_id,
                "thread_id": email.thread_id,
                "sender": email.sender,
                "subject": email.subject,
                "is_starred": email.is_starred,
            },
            action=action,
            user_id=user_id,
            prediction_id=prediction_id,
        )

        await execute_callback(email.id, action)

        try:
            await self._store.log_action(
                "auto_executed",
                email_id=email.id,
                details={
                    "action": action,
                    "prediction_id": prediction_id,
                    "confidence": prediction.final_prediction.confidence if prediction else None,
                    "user_id": user_id,
                },
                triggered_by="auto",
            )
        except DatabaseError as e:
            logger.warning("audit_log_failed", email_id=email.id, error=str(e))

    async def _expire_stale_items(self) -> int:
        cutoff = datetime.now(UTC) - timedelta(days=self._config.queue.expire_after_days)
        try:
            stale = await self._store.get_pending_items_before(cutoff)
        except DatabaseError as e:
            logger.warning("queue_expiry_failed", error=str(e))
            return 0

        expired = 0
        for item in stale:
            item.expire()
            try:
                await self._store.save_queue_item(item)
                await self._store.log_action(
                    "expired",
                    email_id=item.email_id,
                    details={"item_id": item.id, "prediction_id": item.prediction.prediction_id},
                )
                expired += 1
            except DatabaseError as e:
                logger.warning("queue_item_expire_failed", item_id=item.id, error=str(e))

        if expired:
            logger.info("queue_items_expired", count=expired)
        return expired

    async def _run_maintenance(self, result: TriageCycleResult) -> None:
        if self._config.llm_logging.enabled:
            try:
                result.logs_pruned = await self._store.prune_llm_logs(self._config.llm_logging.retention_days)
            except DatabaseError as e:
                logger.warning("log_pruning_failed", error=str(e))

        try:
            result.snapshots_pruned = await self._store.prune_undo_snapshots()
        except DatabaseError as e:
            logger.warning("snapshot_pruning_failed", error=str(e))

    # -----------------------------------------------------------------------
    # Queue resolution
    # -----------------------------------------------------------------------

    async def _require_item(self, item_id: str) -> ActionQueueItem:
        item = await self._store.get_queue_item(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        return item

    async def resolve_item(
        self,
        item_id: str,
        outcome: Outcome,
        modified_action: ActionType | None = None,
    ) -> ActionQueueItem:
        """Apply a user's decision to a pending queue item.

        'approved' and 'modified' approve the item ('modified' replaces the
        action), 'rejected' rejects it. The prediction is marked resolved
        and the outcome feeds the user's trust profile.

        Raises:
            QueueItemNotFoundError: If no item has this ID
            InvalidTransitionError: If the item is not pending
            ValueError: If 'modified' is given without a modified_action
        """
        item = await self._require_item(item_id)

        if outcome == "rejected":
            item.reject()
        elif outcome == "modified":
            if modified_action is None:
                raise ValueError("A modified outcome requires modified_action")
            item.approve(modified_action=modified_action)
        else:
            item.approve()

        item.prediction.resolve(outcome)
        await self._store.save_queue_item(item)

        profile = self.trust.record_outcome(item.user_id, outcome)
        await self.trust.save(self._trust_repo)

        await self._store.log_action(
            outcome,
            email_id=item.email_id,
            details={
                "item_id": item.id,
                "prediction_id": item.prediction.prediction_id,
                "predicted_action": item.prediction.final_prediction.action,
                "action": item.action,
                "trust_stage": profile.trust_stage,
            },
            triggered_by="user",
        )
        logger.info(
            "queue_item_resolved",
            item_id=item.id,
            outcome=outcome,
            action=item.action,
            trust_stage=profile.trust_stage,
        )
        return item

    async def mark_executed(self, item_id: str) -> ActionQueueItem:
        """Record that an approved item's action was carried out."""
        item = await self._require_item(item_id)
        item.mark_executed()
        await self._store.save_queue_item(item)
        await self._store.log_action(
            "executed",
            email_id=item.email_id,
            details={"item_id": item.id, "action": item.action},
            triggered_by="user",
        )
        return item

    async def mark_failed(self, item_id: str, error_message: str) -> ActionQueueItem:
        item = await self._require_item(item_id)
        item.mark_failed(error_message)
        await self._store.save_queue_item(item)
        await self._store.log_action(
            "failed",
            email_id=item.email_id,
            details={"item_id": item.id, "action": item.action, "error": error_message},
        )
        logger.warning("queue_item_failed", item_id=item.id, error=error_message)
        return item

    # -----------------------------------------------------------------------
    # Behavior
    # -----------------------------------------------------------------------

    async def record_behavior(
        self,
        user_id: str,
        email_id: str,
        sender_email: str,
        event_type: EventType,
        context_features: ContextFeatures | None = None,
        **kwargs: Any,
    ) -> BehaviorEvent:
        """Track a user action and persist the updated sender models."""
        event = self.behavior.track_behavior(
            user_id,
            email_id,
            sender_email,
            event_type,
            context_features=context_features,
            **kwargs,
        )
        try:
            await self.behavior.save(self._behavior_repo)
        except DatabaseError as e:
            logger.warning("behavior_persist_failed", event_id=event.event_id, error=str(e))
        return event


def build_engine(
    config: AppConfig,
    store: DatabaseStore,
    anthropic_client: anthropic.AsyncAnthropic | None = None,
) -> TriageEngine:
    """Wire predictors, trust and dispatcher from config.

    Args:
        config: Application configuration
        store: Initialized database store
        anthropic_client: Async client for Tier 3; None runs Tier 1 only

    Returns:
        A TriageEngine (call load_state() before the first cycle)
    """
    behavior = SenderBehaviorModel(config.sender_model)
    trust = TrustRegistry(config.trust)
    tier1 = Tier1Predictor(
        config.bayesian,
        suggestion_threshold=config.ensemble.suggestion_threshold,
        decay_lambda=config.sender_model.decay_lambda,
    )
    tier3 = (
        Tier3Predictor(anthropic_client, config.llm, store=store, logging_config=config.llm_logging)
        if anthropic_client is not None
        else None
    )
    if tier3 is None:
        logger.info("tier3_disabled")

    ensemble = EnsemblePredictor(tier1, tier3=tier3, config=config.ensemble, trust=trust)
    return TriageEngine(store, ensemble, behavior, trust, config)
