"""Tier-1 predictor: deterministic action scoring from sender history.

No network calls and no state; given the same email, sender model and
clock, the prediction is always the same. The mapping from sender
statistics to candidate scores is a swappable ScoringRule.

Default rule, with decay = e^(-lambda * days since last interaction):

    archive = archive_rate * decay * (1 - damping * importance)
    delete  = delete_rate  * decay * (1 - damping * importance)
    keep    = max(response_rate, importance) * decay (+ VIP boost)

Subject keywords nudge the scores (urgent / meeting favour keep). The best
score becomes the confidence after a sample-size penalty and a recency
factor (0.8 + 0.2 * decay). Senders without history, or whose best score
does not clear the suggestion threshold, get 'keep' at low confidence.

Usage:
    from boxzero.predictors.bayesian import Tier1Predictor

    predictor = Tier1Predictor()
    prediction = predictor.predict(email, sender_model)
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from boxzero.behavior.sender_model import (
    PRIOR_ARCHIVE_RATE,
    PRIOR_IMPORTANCE,
    PRIOR_RESPONSE_RATE,
    SenderModel,
    compute_importance,
    sender_id_for,
)
from boxzero.config_schema import BayesianConfig
from boxzero.core.logging import get_logger
from boxzero.predictors.types import ActionType, BayesianFactors, BayesianPrediction, EmailMessage

logger = get_logger(__name__)

URGENT_KEYWORDS = (
    "urgent",
    "asap",
    "immediately",
    "deadline",
    "critical",
    "important",
    "action required",
    "time sensitive",
)

MEETING_KEYWORDS = (
    "meeting",
    "calendar",
    "schedule",
    "invite",
    "appointment",
    "call",
    "zoom",
    "teams",
    "google meet",
)

# Predictions at or above this are counted as high confidence in stats()
HIGH_CONFIDENCE = 0.85

# (email, sender model, decay, config) -> raw score per candidate action
ScoringRule = Callable[[EmailMessage, SenderModel, float, BayesianConfig], dict[ActionType, float]]


def _contains_any(text: str, patterns: Iterable[str]) -> bool:
    return any(p in text for p in patterns)


def default_scoring_rule(
    email: EmailMessage,
    model: SenderModel,
    decay: float,
    config: BayesianConfig,
) -> dict[ActionType, float]:
    """Score archive/delete/keep from sender rates, decay and importance.

    Importance is recomputed with the read-time decay rather than taken from
    the stored model, which was scored at decay 1.0 when last updated.
    """
    importance = compute_importance(model, decay)
    damping = 1 - config.importance_damping * importance

    scores: dict[ActionType, float] = {
        "archive": model.archive_rate * decay * damping,
        "delete": model.delete_rate * decay * damping,
        "keep": max(model.response_rate, importance) * decay,
    }
    if model.is_vip:
        scores["keep"] = min(scores["keep"] + config.vip_keep_boost, 1.0)

    subject = email.subject.lower()
    if _contains_any(subject, URGENT_KEYWORDS):
        scores["keep"] += 0.2
        scores["archive"] -= 0.1
    if _contains_any(subject, MEETING_KEYWORDS):
        scores["keep"] += 0.15

    return scores


class Tier1Predictor:
    """Bayesian (sender-history) predictor.

    Attributes:
        config: Scoring settings
        suggestion_threshold: Minimum score for a non-fallback prediction
        decay_lambda: Lambda for the read-time recency decay
    """

    def __init__(
        self,
        config: BayesianConfig | None = None,
        suggestion_threshold: float = 0.4,
        decay_lambda: float = 0.1,
        scoring_rule: ScoringRule = default_scoring_rule,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.config = config or BayesianConfig()
        self.suggestion_threshold = suggestion_threshold
        self.decay_lambda = decay_lambda
        self.scoring_rule = scoring_rule
        self._clock = clock

    def time_decay(self, model: SenderModel) -> float:
        days = (self._clock() - model.last_interaction).total_seconds() / 86400
        return math.exp(-self.decay_lambda * max(days, 0.0))

    def predict(self, email: EmailMessage, sender_model: SenderModel | None) -> BayesianPrediction:
        """Predict an action for one email.

        Args:
            email: The email to triage
            sender_model: History for the email's sender, if any

        Returns:
            BayesianPrediction (never raises on missing history)
        """
        if sender_model is None or sender_model.total_emails == 0:
            return self._fallback(email, sender_model, reason="no_history")

        decay = self.time_decay(sender_model)
        scores = self.scoring_rule(email, sender_model, decay, self.config)

        # Insertion order breaks ties
        best_action: ActionType = "keep"
        best_score = 0.0
        for action, score in scores.items():
            if score > best_score:
                best_action, best_score = action, score

        if best_score < self.suggestion_threshold:
            return self._fallback(email, sender_model, reason="below_threshold", decay=decay)
        confidence = self._confidence(sender_model, best_score, decay)

        return BayesianPrediction(
            sender_model_id=sender_model.sender_id,
            predicted_action=best_action,
            confidence=confidence,
            reasoning=self._reasoning(sender_model, best_action, confidence),
            factors=BayesianFactors(
                response_rate=sender_model.response_rate,
                archive_rate=sender_model.archive_rate,
                importance_score=compute_importance(sender_model, decay),
                time_decay=decay,
            ),
        )

    def predict_batch(
        self,
        emails: Iterable[EmailMessage],
        sender_models: Mapping[str, SenderModel],
    ) -> dict[str, BayesianPrediction]:
        """Predict every email; sender_models is keyed by sender ID."""
        return {
            email.id: self.predict(email, sender_models.get(sender_id_for(email.sender)))
            for email in emails
        }

    def stats(self, predictions: Iterable[BayesianPrediction]) -> dict[str, Any]:
        """Summary of a set of predictions."""
        predictions = list(predictions)
        distribution: dict[str, int] = {}
        for p in predictions:
            distribution[p.predicted_action] = distribution.get(p.predicted_action, 0) + 1

        return {
            "count": len(predictions),
            "avg_confidence": (sum(p.confidence for p in predictions) / len(predictions) if predictions else 0.0),
            "action_distribution": distribution,
            "high_confidence_count": sum(1 for p in predictions if p.confidence >= HIGH_CONFIDENCE),
            "low_confidence_count": sum(1 for p in predictions if p.confidence < 0.5),
        }

    def _confidence(self, model: SenderModel, score: float, decay: float) -> float:
        confidence = score
        if model.total_emails < self.config.min_emails_for_confidence:
            confidence *= 1 - self.config.sample_size_penalty
        elif model.total_emails < 10:
            confidence *= 1 - self.config.sample_size_penalty * 0.5

        confidence *= 0.8 + 0.2 * decay
        return max(0.0, min(1.0, confidence))

    def _fallback(
        self,
        email: EmailMessage,
        model: SenderModel | None,
        reason: str,
        decay: float = 1.0,
    ) -> BayesianPrediction:
        if model is None or model.total_emails == 0:
            reasoning = "New sender - no interaction history yet. Low confidence - please review."
        else:
            reasoning = (
                f"Based on {model.total_emails} emails from {model.sender_name or model.sender_email}, "
                "no action stands out. Low confidence - please review."
            )

        logger.debug("tier1_fallback", email_id=email.id, reason=reason)
        return BayesianPrediction(
            sender_model_id=model.sender_id if model else sender_id_for(email.sender),
            predicted_action="keep",
            confidence=self.config.no_history_confidence,
            reasoning=reasoning,
            factors=BayesianFactors(
                response_rate=model.response_rate if model else PRIOR_RESPONSE_RATE,
                archive_rate=model.archive_rate if model else PRIOR_ARCHIVE_RATE,
                importance_score=model.importance_score if model else PRIOR_IMPORTANCE,
                time_decay=decay,
            ),
        )

    def _reasoning(self, model: SenderModel, action: ActionType, confidence: float) -> str:
        sender = model.sender_name or model.sender_email
        parts: list[str] = []

        if model.total_emails < self.config.min_emails_for_confidence:
            parts.append(f"Limited history with {sender} ({model.total_emails} emails).")
        else:
            parts.append(f"Based on {model.total_emails} emails from {sender}.")

        if action == "archive":
            parts.append(f"You archive {round(model.archive_rate * 100)}% of emails from this sender.")
        elif action == "delete":
            parts.append(f"You delete {round(model.delete_rate * 100)}% of emails from this sender.")
        elif action == "keep":
            if model.response_rate > 0.5:
                parts.append(f"You respond to {round(model.response_rate * 100)}% of emails from this sender.")
            if model.is_vip:
                parts.append("This sender is marked as VIP.")

        if confidence < 0.5:
            parts.append("Low confidence - please review.")
        elif confidence < 0.7:
            parts.append("Moderate confidence.")

        return " ".join(parts)
