"""Prediction tiers and the ensemble that combines them.

- bayesian: Tier 1, sender-history scoring
- llm: Tier 3, Claude classification and action extraction
- ensemble: weighting, caching and bounded Tier-3 fan-out

Only the shared types are re-exported here; import the tiers from their
modules.
"""

from boxzero.predictors.types import (
    ActionType,
    BayesianPrediction,
    EmailClassification,
    EmailMessage,
    EnsembleWeights,
    ExtractedAction,
    FinalPrediction,
    LLMPrediction,
    PredictionResult,
)

__all__ = [
    "ActionType",
    "BayesianPrediction",
    "EmailClassification",
    "EmailMessage",
    "EnsembleWeights",
    "ExtractedAction",
    "FinalPrediction",
    "LLMPrediction",
    "PredictionResult",
]
