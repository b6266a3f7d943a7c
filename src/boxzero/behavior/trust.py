"""Trust progression: how confident a prediction must be to skip review.

Each user has a TrustProfile that counts how often they approve, reject or
modify suggestions. Once enough interactions accumulate at a high enough
approval rate, the profile advances to the next stage and adopts that
stage's lower auto-approve threshold. Stages never regress.

Usage:
    from boxzero.behavior.trust import TrustRegistry

    registry = TrustRegistry()
    registry.record_outcome("u1", "approved")
    threshold = registry.auto_approve_threshold("u1", fallback=0.85)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from boxzero.config_schema import TrustConfig, TrustStage
from boxzero.core.logging import get_logger

if TYPE_CHECKING:
    from boxzero.db.repository import Repository

logger = get_logger(__name__)

Outcome = Literal["approved", "rejected", "modified"]

TRUST_PROFILES_KEY = "trust_profiles"

INITIAL_STAGE: TrustStage = "training_wheels"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class TrustProfile:
    """Approval history and active thresholds for one user."""

    user_id: str
    auto_approve_threshold: float
    suggestion_threshold: float
    account_created: datetime
    last_updated: datetime
    trust_stage: TrustStage = INITIAL_STAGE
    total_interactions: int = 0
    approved_actions: int = 0
    rejected_actions: int = 0
    modified_actions: int = 0
    trust_score: float = 0.0

    @property
    def approval_rate(self) -> float:
        """(approved + 0.5 * modified) / total; 0.0 before any interaction."""
        if self.total_interactions == 0:
            return 0.0
        return (self.approved_actions + 0.5 * self.modified_actions) / self.total_interactions

    def record_outcome(self, outcome: Outcome, config: TrustConfig, now: datetime | None = None) -> bool:
        """Count one user decision and advance the stage if eligible.

        Args:
            outcome: How the user disposed of a suggestion
            config: Stage table to evaluate against
            now: Timestamp for last_updated

        Returns:
            True if the profile advanced to the next stage
        """
        if outcome == "approved":
            self.approved_actions += 1
        elif outcome == "rejected":
            self.rejected_actions += 1
        elif outcome == "modified":
            self.modified_actions += 1
        else:
            raise ValueError(f"Unknown trust outcome '{outcome}'. Expected approved, rejected or modified.")

        self.total_interactions += 1
        rate = self.approval_rate
        self.trust_score = rate
        self.last_updated = now or _utcnow()

        stage = config.stages[self.trust_stage]
        if (
            stage.next is not None
            and stage.required_interactions is not None
            and self.total_interactions >= stage.required_interactions
            and rate >= stage.min_approval_rate
        ):
            previous = self.trust_stage
            self.trust_stage = stage.next
            self.auto_approve_threshold = config.stages[stage.next].auto_approve_threshold
            logger.info(
                "trust_stage_advanced",
                user_id=self.user_id,
                from_stage=previous,
                to_stage=self.trust_stage,
                auto_approve_threshold=self.auto_approve_threshold,
                approval_rate=round(rate, 3),
            )
            return True
        return False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["account_created"] = self.account_created.isoformat()
        data["last_updated"] = self.last_updated.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrustProfile:
        values = dict(data)
        values["account_created"] = datetime.fromisoformat(values["account_created"])
        values["last_updated"] = datetime.fromisoformat(values["last_updated"])
        return cls(**values)


class TrustRegistry:
    """Per-user trust profiles."""

    def __init__(
        self,
        config: TrustConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config or TrustConfig()
        self._clock = clock
        self._profiles: dict[str, TrustProfile] = {}

    def get(self, user_id: str) -> TrustProfile | None:
        return self._profiles.get(user_id)

    def get_or_create(self, user_id: str) -> TrustProfile:
        """Return the user's profile, starting a new one at training_wheels."""
        profile = self._profiles.get(user_id)
        if profile is None:
            now = self._clock()
            profile = TrustProfile(
                user_id=user_id,
                auto_approve_threshold=self.config.stages[INITIAL_STAGE].auto_approve_threshold,
                suggestion_threshold=self.config.default_suggestion_threshold,
                account_created=now,
                last_updated=now,
            )
            self._profiles[user_id] = profile
            logger.info("trust_profile_created", user_id=user_id, stage=INITIAL_STAGE)
        return profile

    def record_outcome(self, user_id: str, outcome: Outcome) -> TrustProfile:
        """Record a user decision, creating the profile if needed."""
        profile = self.get_or_create(user_id)
        profile.record_outcome(outcome, self.config, now=self._clock())
        return profile

    def auto_approve_threshold(self, user_id: str, fallback: float) -> float:
        """Active threshold for a user, or `fallback` when they have no profile."""
        profile = self._profiles.get(user_id)
        return profile.auto_approve_threshold if profile is not None else fallback

    def profiles(self) -> list[TrustProfile]:
        return list(self._profiles.values())

    async def save(self, repository: Repository) -> None:
        await repository.save(TRUST_PROFILES_KEY, {uid: p.to_dict() for uid, p in self._profiles.items()})

    async def load(self, repository: Repository) -> int:
        """Replace profiles with the repository contents. Returns count loaded."""
        data = await repository.load(TRUST_PROFILES_KEY) or {}
        self._profiles = {uid: TrustProfile.from_dict(p) for uid, p in data.items()}
        logger.info("trust_profiles_loaded", count=len(self._profiles))
        return len(self._profiles)
