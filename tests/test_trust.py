"""Tests for trust profiles and stage progression."""

import pytest

from boxzero.behavior.trust import TrustProfile, TrustRegistry
from boxzero.config_schema import TrustConfig, TrustStageConfig
from boxzero.db.repository import InMemoryRepository


@pytest.fixture
def registry(clock) -> TrustRegistry:
    return TrustRegistry(clock=clock)


def _record(registry: TrustRegistry, user_id: str, outcome: str, times: int) -> TrustProfile:
    profile = registry.get_or_create(user_id)
    for _ in range(times):
        profile = registry.record_outcome(user_id, outcome)
    return profile


class TestTrustProfile:
    def test_new_profile_starts_in_training_wheels(self, registry: TrustRegistry, clock) -> None:
        profile = registry.get_or_create("u1")
        assert profile.trust_stage == "training_wheels"
        assert profile.auto_approve_threshold == 0.95
        assert profile.suggestion_threshold == 0.3
        assert profile.total_interactions == 0
        assert profile.approval_rate == 0.0
        assert profile.account_created == clock()

    def test_modified_counts_half(self, registry: TrustRegistry) -> None:
        _record(registry, "u1", "approved", 2)
        profile = _record(registry, "u1", "modified", 2)
        assert profile.total_interactions == 4
        assert profile.approval_rate == pytest.approx(3 / 4)
        assert profile.trust_score == pytest.approx(3 / 4)

    def test_unknown_outcome_rejected(self, registry: TrustRegistry) -> None:
        profile = registry.get_or_create("u1")
        with pytest.raises(ValueError, match="Unknown trust outcome"):
            profile.record_outcome("ignored", registry.config)  # type: ignore[arg-type]
        assert profile.total_interactions == 0


class TestStageProgression:
    def test_advances_after_required_interactions(self, registry: TrustRegistry) -> None:
        profile = _record(registry, "u1", "approved", 49)
        assert profile.trust_stage == "training_wheels"

        profile = registry.record_outcome("u1", "approved")
        assert profile.trust_stage == "building_confidence"
        assert profile.auto_approve_threshold == 0.85

    def test_low_approval_rate_blocks_advance(self, registry: TrustRegistry) -> None:
        _record(registry, "u1", "rejected", 20)
        profile = _record(registry, "u1", "approved", 40)
        # 40 / 60 < 0.70
        assert profile.total_interactions == 60
        assert profile.trust_stage == "training_wheels"

    def test_reaches_earned_autonomy(self, registry: TrustRegistry) -> None:
        profile = _record(registry, "u1", "approved", 200)
        assert profile.trust_stage == "earned_autonomy"
        assert profile.auto_approve_threshold == 0.75

    def test_never_moves_backwards(self, registry: TrustRegistry) -> None:
        _record(registry, "u1", "approved", 50)
        profile = _record(registry, "u1", "rejected", 300)
        assert profile.trust_stage == "building_confidence"
        assert profile.auto_approve_threshold == 0.85

    def test_custom_stage_table(self, clock) -> None:
        config = TrustConfig(
            stages={
                "training_wheels": TrustStageConfig(
                    required_interactions=2,
                    min_approval_rate=0.5,
                    auto_approve_threshold=0.9,
                    next="building_confidence",
                ),
                "building_confidence": TrustStageConfig(
                    required_interactions=4,
                    min_approval_rate=0.5,
                    auto_approve_threshold=0.8,
                    next="earned_autonomy",
                ),
                "earned_autonomy": TrustStageConfig(min_approval_rate=0.5, auto_approve_threshold=0.7),
            }
        )
        registry = TrustRegistry(config, clock=clock)
        profile = _record(registry, "u1", "approved", 2)
        assert profile.trust_stage == "building_confidence"
        assert profile.auto_approve_threshold == 0.8


class TestRegistry:
    def test_threshold_fallback_without_profile(self, registry: TrustRegistry) -> None:
        assert registry.auto_approve_threshold("nobody", fallback=0.85) == 0.85

    def test_threshold_from_profile(self, registry: TrustRegistry) -> None:
        registry.get_or_create("u1")
        assert registry.auto_approve_threshold("u1", fallback=0.85) == 0.95

    @pytest.mark.asyncio
    async def test_persistence_round_trip(self, registry: TrustRegistry, clock) -> None:
        _record(registry, "u1", "approved", 50)
        _record(registry, "u2", "rejected", 1)
        repo = InMemoryRepository()
        await registry.save(repo)

        restored = TrustRegistry(clock=clock)
        assert await restored.load(repo) == 2
        assert restored.get("u1").trust_stage == "building_confidence"
        assert restored.get("u2").rejected_actions == 1
        assert restored.get("u1").last_updated == clock()
