"""Pydantic configuration schema for the BoxZero triage engine.

This module defines the configuration schema that mirrors config.yaml.
Every tunable of the prediction pipeline lives here with its documented
default, so callers override named fields instead of passing loose dicts.

Usage:
    from boxzero.config_schema import AppConfig

    config = AppConfig(**yaml_data)
    config.ensemble.llm_fallback_threshold  # 0.6
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

TrustStage = Literal["training_wheels", "building_confidence", "earned_autonomy"]


class EnsembleWeights(BaseModel):
    """Default per-tier weights before redistribution and renormalization."""

    tier1: float = Field(default=0.5, ge=0.0, description="Bayesian (sender history) weight")
    tier2: float = Field(default=0.1, ge=0.0, description="Collaborative weight (placeholder)")
    tier3: float = Field(default=0.4, ge=0.0, description="LLM weight")

    @model_validator(mode="after")
    def validate_total(self) -> "EnsembleWeights":
        """Weights must not all be zero, otherwise they cannot be normalized."""
        if self.tier1 + self.tier2 + self.tier3 <= 0:
            raise ValueError("At least one ensemble weight must be greater than 0")
        return self


class EnsembleConfig(BaseModel):
    """Ensemble combiner, cache and Tier-3 budget settings."""

    llm_fallback_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Call the LLM when Tier-1 confidence is below this",
    )
    default_weights: EnsembleWeights = Field(default_factory=EnsembleWeights)
    agreement_boost: float = Field(
        default=0.15,
        ge=0.0,
        le=1.0,
        description="Confidence added when every present tier agrees",
    )
    suggestion_threshold: float = Field(
        default=0.4,
        ge=0.0,
        le=1.0,
        description="Minimum confidence to queue a suggestion for review",
    )
    auto_execute_threshold: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Auto-approve threshold used when the user has no trust profile",
    )
    max_concurrent_llm: int = Field(
        default=3,
        ge=1,
        le=50,
        description="Maximum Tier-3 calls in flight (also the batch chunk size)",
    )
    prediction_cache_ttl_seconds: float = Field(
        default=300.0,
        gt=0,
        description="How long a cached prediction stays valid",
    )
    cache_max_entries: int = Field(
        default=100,
        ge=1,
        description="Soft cap on cached predictions",
    )
    cache_evict_count: int = Field(
        default=50,
        ge=1,
        description="Oldest entries evicted when the soft cap is exceeded",
    )
    processed_max_entries: int = Field(
        default=10_000,
        ge=1,
        description="Batch-processed emails remembered for idempotency (oldest forgotten first)",
    )


class BayesianConfig(BaseModel):
    """Tier-1 scoring settings."""

    min_emails_for_confidence: int = Field(
        default=3,
        ge=1,
        description="Below this many emails the confidence is penalized fully",
    )
    sample_size_penalty: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Confidence penalty for small sample sizes",
    )
    no_history_confidence: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Confidence of the 'keep' fallback for unknown or weak senders",
    )
    importance_damping: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="How strongly sender importance suppresses archive/delete scores",
    )
    vip_keep_boost: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Added to the keep score for VIP senders",
    )


class SenderModelConfig(BaseModel):
    """Sender behavior model settings."""

    decay_lambda: float = Field(
        default=0.1,
        gt=0.0,
        le=10.0,
        description="Lambda for e^(-lambda * days) recency decay",
    )
    recent_events_limit: int = Field(
        default=500,
        ge=1,
        le=100000,
        description="Behavior events kept in the recent-history window",
    )


class TrustStageConfig(BaseModel):
    """One row of the trust stage table."""

    required_interactions: int | None = Field(
        default=None,
        ge=1,
        description="Interactions needed before advancing (None for terminal stage)",
    )
    min_approval_rate: float = Field(ge=0.0, le=1.0)
    auto_approve_threshold: float = Field(ge=0.0, le=1.0)
    next: TrustStage | None = None


def _default_trust_stages() -> dict[str, TrustStageConfig]:
    return {
        "training_wheels": TrustStageConfig(
            required_interactions=50,
            min_approval_rate=0.70,
            auto_approve_threshold=0.95,
            next="building_confidence",
        ),
        "building_confidence": TrustStageConfig(
            required_interactions=200,
            min_approval_rate=0.85,
            auto_approve_threshold=0.85,
            next="earned_autonomy",
        ),
        "earned_autonomy": TrustStageConfig(
            required_interactions=None,
            min_approval_rate=0.90,
            auto_approve_threshold=0.75,
            next=None,
        ),
    }


TRUST_STAGE_ORDER: tuple[TrustStage, ...] = (
    "training_wheels",
    "building_confidence",
    "earned_autonomy",
)


class TrustConfig(BaseModel):
    """Trust progression table and per-profile defaults."""

    stages: dict[TrustStage, TrustStageConfig] = Field(default_factory=_default_trust_stages)
    default_suggestion_threshold: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Suggestion threshold assigned to new trust profiles",
    )

    @model_validator(mode="after")
    def validate_stage_chain(self) -> "TrustConfig":
        """Every stage must be present and 'next' must only point forward."""
        missing = [s for s in TRUST_STAGE_ORDER if s not in self.stages]
        if missing:
            raise ValueError(f"Trust stages missing from table: {', '.join(missing)}")

        for stage, row in self.stages.items():
            if row.next is None:
                continue
            if TRUST_STAGE_ORDER.index(row.next) <= TRUST_STAGE_ORDER.index(stage):
                raise ValueError(f"Trust stage '{stage}' may only advance forward, not to '{row.next}'")
            if row.required_interactions is None:
                raise ValueError(f"Trust stage '{stage}' has a next stage but no required_interactions")
        return self


class LLMConfig(BaseModel):
    """Tier-3 (Claude) adapter settings."""

    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model used for classification and action extraction",
    )
    request_timeout_seconds: float = Field(
        default=20.0,
        ge=1.0,
        le=120.0,
        description="Per-request timeout; a timeout counts as 'Tier-3 absent'",
    )
    sdk_max_retries: int = Field(
        default=0,
        ge=0,
        le=5,
        description="Anthropic SDK transport retries (0 = single attempt, then degrade)",
    )
    max_tokens: int = Field(default=1024, ge=64, le=8192)
    temperature: float = Field(default=0.3, ge=0.0, le=1.0)
    max_body_chars: int = Field(
        default=2000,
        ge=100,
        le=20000,
        description="Email body characters sent to the model",
    )


class QueueConfig(BaseModel):
    """Action queue settings."""

    expire_after_days: int = Field(
        default=7,
        ge=1,
        le=90,
        description="Pending items older than this are expired",
    )
    max_suggestions: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Default cap for smart suggestion lists",
    )


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    retention_days: int = Field(default=30, ge=1, le=365)
    log_prompts: bool = Field(default=True, description="Store full prompts")
    log_responses: bool = Field(default=True, description="Store full responses")


class StorageConfig(BaseModel):
    """SQLite storage configuration."""

    db_path: str = Field(default="data/boxzero.db", description="SQLite database path")

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        """Ensure the path is set and has no traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class AppConfig(BaseModel):
    """Root configuration schema for the BoxZero triage engine.

    Every section has defaults, so an empty config.yaml yields the
    documented behaviour.
    """

    schema_version: int = Field(default=CURRENT_SCHEMA_VERSION, ge=1)

    ensemble: EnsembleConfig = Field(default_factory=EnsembleConfig)
    bayesian: BayesianConfig = Field(default_factory=BayesianConfig)
    sender_model: SenderModelConfig = Field(default_factory=SenderModelConfig)
    trust: TrustConfig = Field(default_factory=TrustConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
