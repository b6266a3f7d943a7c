"""Tests for per-sender behavior models.

Covers Laplace-smoothed rates, read-time decay, importance, VIP handling,
behavior tracking and persistence through a repository.
"""

import math

import pytest

from boxzero.behavior.sender_model import (
    PRIOR_ARCHIVE_RATE,
    PRIOR_RESPONSE_RATE,
    SenderBehaviorModel,
    bayesian_rate,
    build_behavior_context,
    extract_domain,
    sender_id_for,
)
from boxzero.config_schema import SenderModelConfig
from boxzero.db.repository import InMemoryRepository, SqliteRepository
from boxzero.db.store import DatabaseStore


@pytest.fixture
def behavior(clock) -> SenderBehaviorModel:
    return SenderBehaviorModel(clock=clock)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_sender_id_is_normalized(self) -> None:
        assert sender_id_for("Alice.Smith@Example.com") == "sender_alice_smith_example_com"

    def test_same_address_same_id(self) -> None:
        assert sender_id_for("bob@x.io") == sender_id_for("BOB@X.IO")

    def test_extract_domain(self) -> None:
        assert extract_domain("news@Shop.Example") == "shop.example"
        assert extract_domain("not-an-address") == ""

    @pytest.mark.parametrize(("k", "n"), [(0, 0), (0, 10), (10, 10), (3, 7)])
    def test_bayesian_rate_strictly_inside_unit_interval(self, k: int, n: int) -> None:
        rate = bayesian_rate(k, n)
        assert 0.0 < rate < 1.0
        assert rate == pytest.approx((k + 1) / (n + 2))

    def test_behavior_context(self, clock) -> None:
        context = build_behavior_context(clock(), body="x" * 120, attachment_count=2, thread_depth=3)
        assert context.time_of_day == clock().hour
        assert context.day_of_week == clock().weekday()
        assert context.email_length == 120
        assert context.has_attachments is True
        assert context.thread_depth == 3


# ---------------------------------------------------------------------------
# Recording events
# ---------------------------------------------------------------------------


class TestRecordEvent:
    def test_new_sender_starts_with_priors(self, behavior: SenderBehaviorModel) -> None:
        model = behavior.get_or_create("new@example.com", "u1")
        assert model.total_emails == 0
        assert model.response_rate == PRIOR_RESPONSE_RATE
        assert model.archive_rate == PRIOR_ARCHIVE_RATE
        assert model.user_id == "u1"
        assert model.sender_domain == "example.com"

    def test_rates_follow_laplace_formula(self, behavior: SenderBehaviorModel) -> None:
        for _ in range(8):
            behavior.record_event("news@shop.example", "archive")
        behavior.record_event("news@shop.example", "respond")
        behavior.record_event("news@shop.example", "read")

        model = behavior.get("news@shop.example")
        assert model.total_emails == 10
        assert model.archived_emails == 8
        assert model.archive_rate == pytest.approx(9 / 12)
        assert model.response_rate == pytest.approx(2 / 12)
        assert model.delete_rate == pytest.approx(1 / 12)

    def test_event_without_counter_still_counts_total(self, behavior: SenderBehaviorModel) -> None:
        behavior.record_event("a@b.com", "snooze")
        model = behavior.get("a@b.com")
        assert model.total_emails == 1
        assert model.responded_emails == 0
        assert model.response_rate == pytest.approx(1 / 3)

    def test_record_resets_decay_and_timestamp(self, behavior: SenderBehaviorModel, clock) -> None:
        behavior.record_event("a@b.com", "read")
        clock.advance(days=10)
        behavior.record_event("a@b.com", "respond")

        model = behavior.get("a@b.com")
        assert model.decayed_weight == 1.0
        assert model.last_interaction == clock()
        assert behavior.time_decay(model) == pytest.approx(1.0)

    def test_importance_formula(self, behavior: SenderBehaviorModel) -> None:
        behavior.record_event("a@b.com", "star")
        model = behavior.get("a@b.com")
        expected = 0.4 * model.response_rate + 0.3 * 1.0 + 0.2 * 1.0 + 0.1 * 0.01
        assert model.importance_score == pytest.approx(expected)


# ---------------------------------------------------------------------------
# Decay and ranking
# ---------------------------------------------------------------------------


class TestDecay:
    def test_decay_strictly_decreasing(self, behavior: SenderBehaviorModel, clock) -> None:
        model = behavior.record_event("a@b.com", "read")
        values = []
        for _ in range(4):
            clock.advance(days=3)
            values.append(behavior.time_decay(model))
        assert all(later < earlier for earlier, later in zip(values, values[1:]))
        assert values[-1] == pytest.approx(math.exp(-0.1 * 12))

    def test_custom_lambda(self, clock) -> None:
        behavior = SenderBehaviorModel(SenderModelConfig(decay_lambda=0.5), clock=clock)
        model = behavior.record_event("a@b.com", "read")
        clock.advance(days=2)
        assert behavior.time_decay(model) == pytest.approx(math.exp(-1.0))

    def test_importance_of_leaves_stored_model_untouched(self, behavior: SenderBehaviorModel, clock) -> None:
        behavior.record_event("a@b.com", "respond")
        clock.advance(days=30)

        fresh = behavior.importance_of(behavior.get("a@b.com"))
        stored = behavior.get("a@b.com")
        assert fresh.decayed_weight < 1.0
        assert fresh.importance_score < stored.importance_score
        assert stored.decayed_weight == 1.0

    def test_rank_puts_vips_first(self, behavior: SenderBehaviorModel) -> None:
        for _ in range(5):
            behavior.record_event("boss@corp.com", "respond")
        behavior.record_event("friend@mail.com", "read")
        behavior.mark_vip("friend@mail.com")

        ranked = behavior.rank(limit=2)
        assert [m.sender_email for m in ranked] == ["friend@mail.com", "boss@corp.com"]

    def test_should_be_vip(self, behavior: SenderBehaviorModel, clock) -> None:
        for _ in range(6):
            model = behavior.record_event("boss@corp.com", "respond")
        assert behavior.should_be_vip(model)

        clock.advance(days=30)
        assert not behavior.should_be_vip(model)

    def test_mark_vip_unknown_sender(self, behavior: SenderBehaviorModel) -> None:
        assert behavior.mark_vip("nobody@nowhere.com") is False


# ---------------------------------------------------------------------------
# Behavior tracking
# ---------------------------------------------------------------------------


class TestTrackBehavior:
    def test_event_is_recorded_and_applied(self, behavior: SenderBehaviorModel) -> None:
        event = behavior.track_behavior("u1", "msg-1", "a@b.com", "archive", account_id="acct-1")

        assert event.event_id.startswith("evt_")
        assert event.sender_id == sender_id_for("a@b.com")
        assert behavior.recent_events() == [event]
        assert behavior.get("a@b.com").archived_emails == 1
        assert behavior.total_events_tracked == 1

    def test_recent_events_newest_first_and_bounded(self, clock) -> None:
        behavior = SenderBehaviorModel(SenderModelConfig(recent_events_limit=3), clock=clock)
        for i in range(5):
            behavior.track_behavior("u1", f"msg-{i}", "a@b.com", "read")

        assert [e.email_id for e in behavior.recent_events()] == ["msg-4", "msg-3", "msg-2"]
        assert behavior.total_events_tracked == 5

    def test_events_by_sender(self, behavior: SenderBehaviorModel) -> None:
        behavior.track_behavior("u1", "m1", "a@b.com", "read")
        behavior.track_behavior("u1", "m2", "c@d.com", "read")
        assert [e.email_id for e in behavior.events_by_sender(sender_id_for("c@d.com"))] == ["m2"]

    def test_clear(self, behavior: SenderBehaviorModel) -> None:
        behavior.track_behavior("u1", "m1", "a@b.com", "read")
        behavior.clear()
        assert behavior.models == {}
        assert behavior.recent_events() == []
        assert behavior.total_events_tracked == 0


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    @pytest.mark.asyncio
    async def test_round_trip_in_memory(self, behavior: SenderBehaviorModel, clock) -> None:
        behavior.track_behavior("u1", "m1", "a@b.com", "respond")
        behavior.mark_vip("a@b.com")
        repo = InMemoryRepository()
        await behavior.save(repo)

        restored = SenderBehaviorModel(clock=clock)
        assert await restored.load(repo) == 1
        model = restored.get("a@b.com")
        assert model.is_vip
        assert model.responded_emails == 1
        assert restored.recent_events()[0].email_id == "m1"

    @pytest.mark.asyncio
    async def test_round_trip_sqlite(self, behavior: SenderBehaviorModel, store: DatabaseStore, clock) -> None:
        for _ in range(3):
            behavior.record_event("news@shop.example", "archive", user_id="u1")
        repo = SqliteRepository(store, "behavior")
        await behavior.save(repo)

        restored = SenderBehaviorModel(clock=clock)
        await restored.load(SqliteRepository(store, "behavior"))
        assert restored.get("news@shop.example").archive_rate == pytest.approx(4 / 5)
        assert restored.get("news@shop.example").last_interaction == clock()

    @pytest.mark.asyncio
    async def test_load_empty_repository(self, behavior: SenderBehaviorModel) -> None:
        assert await behavior.load(InMemoryRepository()) == 0
        assert behavior.models == {}
