"""Auto-execution dispatcher: execute, queue for review, or leave alone.

For each prediction of a batch:

- confident enough to skip review and not 'keep': execute via callback;
  if the callback fails the item is queued instead, never dropped
- not 'keep' and at least the suggestion threshold: queue for review
- 'keep': nothing is executed or queued

Emails already handled by an earlier run are not executed or queued again
unless force_refresh.

Usage:
    from boxzero.queue.dispatcher import ActionDispatcher

    dispatcher = ActionDispatcher(ensemble, behavior)
    result = await dispatcher.process_auto_actions(emails, "u1", execute)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from boxzero.core.logging import get_logger
from boxzero.predictors.types import ActionType, EmailMessage, PredictionResult
from boxzero.queue.actions import ActionQueueItem

if TYPE_CHECKING:
    from boxzero.behavior.sender_model import SenderBehaviorModel
    from boxzero.predictors.ensemble import EnsemblePredictor

logger = get_logger(__name__)

DEFAULT_ACCOUNT_ID = "default"

# (email_id, action) -> None; raising marks the execution as failed
ExecuteCallback = Callable[[str, ActionType], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class AutoActionFailure:
    """An auto-execution whose callback raised."""

    email_id: str
    action: ActionType
    error: str


@dataclass
class AutoActionResult:
    """Outcome of one process_auto_actions() run.

    Attributes:
        auto_executed: Email IDs whose action was executed
        queued: Items created for human review (including failed executions)
        failures: Callback failures that fell back to the queue
        predictions: Every prediction made, keyed by email ID
    """

    auto_executed: list[str] = field(default_factory=list)
    queued: list[ActionQueueItem] = field(default_factory=list)
    failures: list[AutoActionFailure] = field(default_factory=list)
    predictions: dict[str, PredictionResult] = field(default_factory=dict)


class ActionDispatcher:
    """Route ensemble predictions to auto-execution or the review queue."""

    def __init__(self, ensemble: EnsemblePredictor, behavior: SenderBehaviorModel):
        self._ensemble = ensemble
        self._behavior = behavior

    @property
    def suggestion_threshold(self) -> float:
        return self._ensemble.config.suggestion_threshold

    def _queue_item(self, prediction: PredictionResult, email: EmailMessage) -> ActionQueueItem:
        return self._ensemble.create_action_queue_item(prediction, email, email.account_id or DEFAULT_ACCOUNT_ID)

    async def process_auto_actions(
        self,
        emails: Sequence[EmailMessage],
        user_id: str,
        execute_callback: ExecuteCallback,
        force_refresh: bool = False,
    ) -> AutoActionResult:
        """Predict a batch and execute or queue each flagged action.

        Args:
            emails: Emails to triage
            user_id: User the predictions are for
            execute_callback: Performs an action on the mail store
            force_refresh: Reprocess emails seen in an earlier batch

        Returns:
            AutoActionResult
        """
        seen = set() if force_refresh else {e.id for e in emails if self._ensemble.is_processed(user_id, e.id)}
        predictions = await self._ensemble.predict_batch(
            emails, user_id, self._behavior.models, force_refresh=force_refresh
        )
        by_id = {email.id: email for email in emails}
        result = AutoActionResult(predictions=predictions)

        for email_id, prediction in predictions.items():
            email = by_id[email_id]
            final = prediction.final_prediction

            if email_id in seen or final.action == "keep":
                continue

            if not final.requires_approval:
                try:
                    await execute_callback(email_id, final.action)
                except Exception as e:
                    logger.error(
                        "auto_action_failed",
                        email_id=email_id,
                        action=final.action,
                        error=str(e),
                    )
                    result.failures.append(AutoActionFailure(email_id=email_id, action=final.action, error=str(e)))
                    result.queued.append(self._queue_item(prediction, email))
                    continue

                result.auto_executed.append(email_id)
                logger.info(
                    "auto_action_executed",
                    email_id=email_id,
                    action=final.action,
                    confidence=round(final.confidence, 3),
                    prediction_id=prediction.prediction_id,
                )
            elif final.confidence >= self.suggestion_threshold:
                result.queued.append(self._queue_item(prediction, email))

        logger.info(
            "auto_actions_processed",
            user_id=user_id,
            predictions=len(predictions),
            auto_executed=len(result.auto_executed),
            queued=len(result.queued),
            failures=len(result.failures),
        )
        return result

    async def get_smart_suggestions(
        self,
        emails: Sequence[EmailMessage],
        user_id: str,
        max_suggestions: int = 10,
    ) -> list[ActionQueueItem]:
        """Queue-ready suggestions, most confident first.

        Only non-'keep' predictions at or above the suggestion threshold
        are returned; nothing is executed.
        """
        predictions = await self._ensemble.predict_batch(emails, user_id, self._behavior.models)
        by_id = {email.id: email for email in emails}

        suggestions = [
            self._queue_item(prediction, by_id[email_id])
            for email_id, prediction in predictions.items()
            if prediction.final_prediction.action != "keep"
            and prediction.final_prediction.confidence >= self.suggestion_threshold
        ]
        suggestions.sort(key=lambda item: item.prediction.final_prediction.confidence, reverse=True)
        return suggestions[:max_suggestions]
