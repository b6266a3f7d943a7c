"""Ensemble predictor: combines the tiers into one decision.

- Tier 1: Bayesian (fast, local, sender history), always computed
- Tier 2: Collaborative (cross-user patterns), placeholder, always absent
- Tier 3: LLM (semantic), only when Tier 1 is unsure and budget allows

Weights start from the configured defaults, absent tiers hand their weight
to present ones, and the result is renormalized to sum to 1. Each present
tier votes confidence * weight for its predicted action; the highest total
wins and ties favour Tier 1. When two or more tiers agree, the confidence
gets an agreement boost.

Usage:
    from boxzero.predictors.ensemble import EnsemblePredictor

    ensemble = EnsemblePredictor(Tier1Predictor(), tier3=llm, trust=registry)
    result = await ensemble.predict(email, "u1", sender_model)
    results = await ensemble.predict_batch(emails, "u1", behavior.models)
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from boxzero.behavior.sender_model import sender_id_for
from boxzero.config_schema import EnsembleConfig
from boxzero.config_schema import EnsembleWeights as WeightDefaults
from boxzero.core.concurrency import InFlightBudget, chunked
from boxzero.core.logging import correlation_scope, get_logger
from boxzero.predictors.cache import PredictionCache, ProcessedRegistry
from boxzero.predictors.types import (
    ActionType,
    BayesianPrediction,
    EmailMessage,
    EnsembleWeights,
    FinalPrediction,
    LLMPrediction,
    PredictionResult,
    TierPrediction,
)
from boxzero.queue.actions import ActionQueueItem, create_action_queue_item

if TYPE_CHECKING:
    from boxzero.behavior.sender_model import SenderModel
    from boxzero.behavior.trust import TrustRegistry
    from boxzero.predictors.bayesian import Tier1Predictor
    from boxzero.predictors.llm import Tier3Predictor

logger = get_logger(__name__)


def compute_weights(
    tier3_present: bool,
    tier2_present: bool = False,
    defaults: WeightDefaults | None = None,
) -> EnsembleWeights:
    """Redistribute absent tiers' weight and normalize to sum to 1.0.

    An absent Tier 3 hands its weight to Tier 1. An absent Tier 2 splits
    its weight between Tier 1 and Tier 3 (all to Tier 1 when Tier 3 is
    also absent).
    """
    defaults = defaults or WeightDefaults()
    t1, t2, t3 = defaults.tier1, defaults.tier2, defaults.tier3

    if not tier3_present:
        t1, t3 = t1 + t3, 0.0

    if not tier2_present:
        if tier3_present:
            t1, t3 = t1 + t2 / 2, t3 + t2 / 2
        else:
            t1 += t2
        t2 = 0.0

    total = t1 + t2 + t3
    if total <= 0:
        return EnsembleWeights(tier1=1.0, tier2=0.0, tier3=0.0)
    return EnsembleWeights(tier1=t1 / total, tier2=t2 / total, tier3=t3 / total)


def combine_predictions(
    tier1: BayesianPrediction,
    tier2: TierPrediction | None = None,
    tier3: LLMPrediction | None = None,
    auto_approve_threshold: float = 0.85,
    default_weights: WeightDefaults | None = None,
    agreement_boost: float = 0.15,
) -> tuple[FinalPrediction, EnsembleWeights]:
    """Merge tier outputs into a final prediction.

    Returns:
        (final prediction, normalized weights used)
    """
    weights = compute_weights(tier3 is not None, tier2 is not None, default_weights)

    present: list[tuple[TierPrediction, float]] = [(tier1, weights.tier1)]
    if tier2 is not None:
        present.append((tier2, weights.tier2))
    if tier3 is not None:
        present.append((tier3, weights.tier3))

    scores: dict[ActionType, float] = {}
    for prediction, weight in present:
        action = prediction.predicted_action
        scores[action] = scores.get(action, 0.0) + prediction.confidence * weight

    # Strict '>' keeps the earliest (Tier 1) action on ties
    best_action: ActionType = tier1.predicted_action
    best_score = scores[best_action]
    for action, score in scores.items():
        if score > best_score:
            best_action, best_score = action, score

    confidence = best_score
    all_agree = len(present) > 1 and all(p.predicted_action == best_action for p, _ in present)
    if all_agree:
        confidence = min(1.0, confidence + agreement_boost)

    parts = [f"Bayesian: {tier1.predicted_action} ({round(tier1.confidence * 100)}%)"]
    if tier3 is not None:
        parts.append(f"LLM: {tier3.predicted_action} ({round(tier3.confidence * 100)}%)")
    if all_agree:
        parts.append("All tiers agree.")

    final = FinalPrediction(
        action=best_action,
        confidence=confidence,
        reasoning=" | ".join(parts),
        requires_approval=confidence < auto_approve_threshold,
    )
    return final, weights


class EnsemblePredictor:
    """Orchestrates Tier 1 and Tier 3, caches results, bounds LLM fan-out.

    Runs on a single coordinating task. The cache, the processed set and
    the in-flight counter are not locked.

    Attributes:
        config: Thresholds, weights, cache and concurrency settings
    """

    def __init__(
        self,
        tier1: Tier1Predictor,
        tier3: Tier3Predictor | None = None,
        config: EnsembleConfig | None = None,
        trust: TrustRegistry | None = None,
        cache: PredictionCache | None = None,
    ):
        """Initialize the ensemble.

        Args:
            tier1: Bayesian predictor
            tier3: LLM predictor; None disables Tier 3 entirely
            config: Ensemble settings
            trust: Per-user trust profiles for the auto-approve threshold
            cache: Prediction cache (a new one is built from config if omitted)
        """
        self.config = config or EnsembleConfig()
        self._tier1 = tier1
        self._tier3 = tier3
        self._trust = trust
        self._cache = cache or PredictionCache(
            ttl_seconds=self.config.prediction_cache_ttl_seconds,
            max_entries=self.config.cache_max_entries,
            evict_count=self.config.cache_evict_count,
        )
        self._budget = InFlightBudget(self.config.max_concurrent_llm)
        self._processed = ProcessedRegistry(self.config.processed_max_entries)

    @property
    def cache(self) -> PredictionCache:
        return self._cache

    def is_processed(self, user_id: str, email_id: str) -> bool:
        """Whether a batch already predicted this email for this user."""
        return (user_id, email_id) in self._processed

    def auto_approve_threshold(self, user_id: str) -> float:
        """The user's trust-stage threshold, or the configured fallback."""
        if self._trust is None:
            return self.config.auto_execute_threshold
        return self._trust.auto_approve_threshold(user_id, fallback=self.config.auto_execute_threshold)

    def combine(
        self,
        tier1: BayesianPrediction,
        tier2: TierPrediction | None = None,
        tier3: LLMPrediction | None = None,
        auto_approve_threshold: float | None = None,
    ) -> tuple[FinalPrediction, EnsembleWeights]:
        """combine_predictions() with this ensemble's configuration."""
        return combine_predictions(
            tier1,
            tier2,
            tier3,
            auto_approve_threshold=(
                self.config.auto_execute_threshold if auto_approve_threshold is None else auto_approve_threshold
            ),
            default_weights=self.config.default_weights,
            agreement_boost=self.config.agreement_boost,
        )

    async def predict(
        self,
        email: EmailMessage,
        user_id: str,
        sender_model: SenderModel | None,
        force_refresh: bool = False,
    ) -> PredictionResult:
        """Predict an action for one email.

        Single predictions are cached but not marked processed; only
        predict_batch() feeds the idempotency guard.

        Args:
            email: Email to triage
            user_id: User the prediction is for
            sender_model: Sender history (None for unknown senders)
            force_refresh: Skip the cache lookup

        Returns:
            PredictionResult (cached for the TTL)
        """
        if not force_refresh:
            cached = self._cache.get(user_id, email.id)
            if cached is not None:
                logger.debug("prediction_cache_hit", email_id=email.id, user_id=user_id)
                return cached

        tier1 = self._tier1.predict(email, sender_model)

        tier3: LLMPrediction | None = None
        if self._needs_llm(tier1):
            if self._budget.exhausted:
                logger.info("tier3_skipped_budget", email_id=email.id, in_flight=self._budget.in_flight)
            else:
                tier3 = await self._llm_predict(email)

        result = self._build_result(email, user_id, tier1, tier3, self.auto_approve_threshold(user_id))
        self._cache.put(result)
        return result

    async def predict_batch(
        self,
        emails: Sequence[EmailMessage],
        user_id: str,
        sender_models: Mapping[str, SenderModel],
        force_refresh: bool = False,
    ) -> dict[str, PredictionResult]:
        """Predict a batch with Tier-3 calls in sequential fixed-size chunks.

        Emails already processed for this user are skipped unless
        force_refresh; their cached result is returned while it is live.
        A live result from an earlier single predict() is reused and the
        email is marked processed.

        Args:
            emails: Emails to triage
            user_id: User the predictions are for
            sender_models: Sender models keyed by sender ID
            force_refresh: Reprocess emails seen before

        Returns:
            Mapping of email ID to PredictionResult, in input order
        """
        with correlation_scope():
            results: dict[str, PredictionResult] = {}
            pending: list[EmailMessage] = []
            skipped = 0
            for email in emails:
                if not force_refresh and (user_id, email.id) in self._processed:
                    skipped += 1
                    cached = self._cache.get(user_id, email.id)
                    if cached is not None:
                        results[email.id] = cached
                    continue
                if not force_refresh:
                    cached = self._cache.get(user_id, email.id)
                    if cached is not None:
                        # Predicted singly earlier: reuse it and mark it processed now
                        self._processed.add(user_id, email.id)
                        results[email.id] = cached
                        continue
                pending.append(email)

            tier1_results = {
                email.id: self._tier1.predict(email, sender_models.get(sender_id_for(email.sender)))
                for email in pending
            }
            needs_llm = [e for e in pending if self._needs_llm(tier1_results[e.id])]

            llm_results: dict[str, LLMPrediction] = {}
            for chunk in chunked(needs_llm, self.config.max_concurrent_llm):
                predictions = await asyncio.gather(*(self._llm_predict(email) for email in chunk))
                for email, prediction in zip(chunk, predictions, strict=True):
                    if prediction is not None:
                        llm_results[email.id] = prediction

            threshold = self.auto_approve_threshold(user_id)
            for email in pending:
                result = self._build_result(
                    email, user_id, tier1_results[email.id], llm_results.get(email.id), threshold
                )
                self._cache.put(result)
                self._processed.add(user_id, email.id)
                results[email.id] = result

            logger.info(
                "batch_predicted",
                user_id=user_id,
                emails=len(emails),
                predicted=len(pending),
                skipped=skipped,
                tier3_requested=len(needs_llm),
                tier3_returned=len(llm_results),
            )
            return {email.id: results[email.id] for email in emails if email.id in results}

    def create_action_queue_item(
        self,
        prediction: PredictionResult,
        email: EmailMessage,
        account_id: str,
    ) -> ActionQueueItem:
        return create_action_queue_item(prediction, email, account_id)

    def stats(self) -> dict[str, Any]:
        return {
            "cache_size": len(self._cache),
            "in_flight_llm_calls": self._budget.in_flight,
            "processed_emails": len(self._processed),
            "tier3_enabled": self._tier3 is not None,
            "config": self.config.model_dump(),
        }

    def clear_cache(self) -> None:
        """Drop cached predictions and forget which emails were processed."""
        self._cache.clear()
        self._processed.clear()

    def update_config(self, **overrides: Any) -> EnsembleConfig:
        """Replace named config fields (validated) and apply them.

        Raises:
            pydantic.ValidationError: If an override is invalid
        """
        self.config = EnsembleConfig.model_validate({**self.config.model_dump(), **overrides})
        self._budget.resize(self.config.max_concurrent_llm)
        self._cache.ttl_seconds = self.config.prediction_cache_ttl_seconds
        self._cache.max_entries = self.config.cache_max_entries
        self._cache.evict_count = self.config.cache_evict_count
        self._processed.resize(self.config.processed_max_entries)
        logger.info("ensemble_config_updated", fields=sorted(overrides))
        return self.config

    def _needs_llm(self, tier1: BayesianPrediction) -> bool:
        return self._tier3 is not None and tier1.confidence < self.config.llm_fallback_threshold

    async def _llm_predict(self, email: EmailMessage) -> LLMPrediction | None:
        """Tier-3 prediction holding one budget slot; never raises."""
        if self._tier3 is None:
            return None
        async with self._budget.slot():
            try:
                return await self._tier3.predict(email)
            except Exception as e:
                # Tier-3 problems must never fail the ensemble
                logger.error("tier3_failed", email_id=email.id, error=str(e), error_type=type(e).__name__)
                return None

    def _build_result(
        self,
        email: EmailMessage,
        user_id: str,
        tier1: BayesianPrediction,
        tier3: LLMPrediction | None,
        auto_approve_threshold: float,
    ) -> PredictionResult:
        final, weights = self.combine(tier1, None, tier3, auto_approve_threshold)
        result = PredictionResult(
            prediction_id=f"pred_{uuid.uuid4().hex}",
            email_id=email.id,
            thread_id=email.thread_id,
            user_id=user_id,
            tier1_prediction=tier1,
            tier3_prediction=tier3,
            final_prediction=final,
            ensemble_weights=weights,
            timestamp=datetime.now(UTC),
        )
        logger.info(
            "prediction_complete",
            email_id=email.id,
            action=final.action,
            confidence=round(final.confidence, 3),
            requires_approval=final.requires_approval,
            tier3_used=tier3 is not None,
        )
        return result
