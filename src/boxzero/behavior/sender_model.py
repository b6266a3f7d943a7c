"""Per-sender behavior model with Bayesian rates and time-decayed importance.

Every user action on an email (respond, archive, delete, star, ...) is
recorded against the sender. Rates use Laplace smoothing,
P = (k + 1) / (n + 2), so they stay strictly inside (0, 1) even before
any observation. Recency decay e^(-lambda * days) is applied only when a
model is read; the stored decayed_weight is reset to 1.0 on every event.

Usage:
    from boxzero.behavior.sender_model import SenderBehaviorModel

    behavior = SenderBehaviorModel()
    behavior.record_event("news@shop.example", "archive", user_id="u1")
    model = behavior.get("news@shop.example")
    fresh = behavior.importance_of(model)
"""

from __future__ import annotations

import math
import re
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from boxzero.config_schema import SenderModelConfig
from boxzero.core.logging import get_logger

if TYPE_CHECKING:
    from boxzero.db.repository import Repository

logger = get_logger(__name__)

EventType = Literal[
    "read",
    "respond",
    "archive",
    "delete",
    "star",
    "unstar",
    "snooze",
    "ignore",
    "mark_spam",
    "unsubscribe",
    "move",
    "label",
]

# Priors for a sender with no observations
PRIOR_RESPONSE_RATE = 0.5
PRIOR_ARCHIVE_RATE = 0.3
PRIOR_DELETE_RATE = 0.1
PRIOR_IMPORTANCE = 0.5
PRIOR_URGENCY = 0.3

# Events beyond this many are dropped when persisting
PERSISTED_EVENTS_LIMIT = 200

SENDER_MODELS_KEY = "sender_models"
BEHAVIOR_EVENTS_KEY = "behavior_events"

_COUNTER_FOR_EVENT: dict[str, str] = {
    "respond": "responded_emails",
    "archive": "archived_emails",
    "delete": "deleted_emails",
    "star": "starred_emails",
    "ignore": "ignored_emails",
}

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def sender_id_for(sender_email: str) -> str:
    """Stable sender ID derived from the address."""
    return "sender_" + _NON_ALNUM.sub("_", sender_email.lower())


def extract_domain(sender_email: str) -> str:
    """Domain part of an address, lowercased ('' if there is none)."""
    _, sep, domain = sender_email.rpartition("@")
    return domain.lower() if sep else ""


def bayesian_rate(successes: int, total: int) -> float:
    """Laplace-smoothed probability (k + 1) / (n + 2)."""
    return (successes + 1) / (total + 2)


@dataclass(frozen=True, slots=True)
class ContextFeatures:
    """Situational features captured alongside a behavior event."""

    time_of_day: int
    day_of_week: int
    is_weekend: bool
    email_length: int = 0
    has_attachments: bool = False
    attachment_count: int = 0
    thread_depth: int = 1
    recipient_count: int = 1


@dataclass(frozen=True, slots=True)
class BehaviorEvent:
    """Immutable record of a single user action on an email."""

    event_id: str
    user_id: str
    email_id: str
    sender_id: str
    event_type: EventType
    timestamp: datetime
    context_features: ContextFeatures
    account_id: str = ""
    thread_id: str | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BehaviorEvent:
        return cls(
            event_id=data["event_id"],
            user_id=data["user_id"],
            email_id=data["email_id"],
            sender_id=data["sender_id"],
            event_type=data["event_type"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            context_features=ContextFeatures(**data["context_features"]),
            account_id=data.get("account_id", ""),
            thread_id=data.get("thread_id"),
            duration_ms=data.get("duration_ms"),
        )


@dataclass
class SenderModel:
    """Accumulated statistics for one sender.

    Rates are derived from the counters and must only be changed through
    SenderBehaviorModel.record_event().
    """

    sender_id: str
    sender_email: str
    sender_domain: str
    user_id: str
    first_seen: datetime
    last_interaction: datetime
    last_updated: datetime
    sender_name: str | None = None
    total_emails: int = 0
    responded_emails: int = 0
    archived_emails: int = 0
    deleted_emails: int = 0
    starred_emails: int = 0
    ignored_emails: int = 0
    response_rate: float = PRIOR_RESPONSE_RATE
    archive_rate: float = PRIOR_ARCHIVE_RATE
    delete_rate: float = PRIOR_DELETE_RATE
    importance_score: float = PRIOR_IMPORTANCE
    urgency_score: float = PRIOR_URGENCY
    decayed_weight: float = 1.0
    is_vip: bool = False

    @property
    def star_rate(self) -> float:
        """Raw (unsmoothed) share of starred emails."""
        return self.starred_emails / self.total_emails if self.total_emails else 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("first_seen", "last_interaction", "last_updated"):
            data[key] = getattr(self, key).isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SenderModel:
        values = dict(data)
        for key in ("first_seen", "last_interaction", "last_updated"):
            values[key] = datetime.fromisoformat(values[key])
        return cls(**values)


def compute_importance(model: SenderModel, decayed_weight: float) -> float:
    """Importance = 0.4*response + 0.3*star + 0.2*decay + 0.1*volume."""
    volume = min(model.total_emails / 100, 1.0)
    return 0.4 * model.response_rate + 0.3 * model.star_rate + 0.2 * decayed_weight + 0.1 * volume


def build_behavior_context(
    timestamp: datetime,
    body: str = "",
    attachment_count: int = 0,
    thread_depth: int = 1,
    recipient_count: int = 1,
) -> ContextFeatures:
    """Derive context features for a behavior event."""
    return ContextFeatures(
        time_of_day=timestamp.hour,
        day_of_week=timestamp.weekday(),
        is_weekend=timestamp.weekday() >= 5,
        email_length=len(body),
        has_attachments=attachment_count > 0,
        attachment_count=attachment_count,
        thread_depth=thread_depth,
        recipient_count=recipient_count,
    )


class SenderBehaviorModel:
    """Store and update per-sender behavior models.

    Models are keyed by sender ID and never deleted, only accumulated.
    Mutation happens on a single coordinating task; nothing here is locked.

    Attributes:
        config: Decay and history-window settings
        total_events_tracked: Behavior events seen since creation (or clear())
    """

    def __init__(
        self,
        config: SenderModelConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config or SenderModelConfig()
        self._clock = clock
        self._models: dict[str, SenderModel] = {}
        self._events: list[BehaviorEvent] = []
        self.total_events_tracked = 0

    @property
    def models(self) -> dict[str, SenderModel]:
        """Read-only view of stored models keyed by sender ID."""
        return dict(self._models)

    def get(self, sender_email: str) -> SenderModel | None:
        """Return the stored model for a sender, if any."""
        return self._models.get(sender_id_for(sender_email))

    def get_or_create(self, sender_email: str, user_id: str, sender_name: str | None = None) -> SenderModel:
        """Return the existing model or register a fresh one seeded with priors."""
        sender_id = sender_id_for(sender_email)
        model = self._models.get(sender_id)
        if model is None:
            now = self._clock()
            model = SenderModel(
                sender_id=sender_id,
                sender_email=sender_email.lower(),
                sender_domain=extract_domain(sender_email),
                user_id=user_id,
                sender_name=sender_name,
                first_seen=now,
                last_interaction=now,
                last_updated=now,
            )
            self._models[sender_id] = model
            logger.debug("sender_model_created", sender_id=sender_id, user_id=user_id)
        return model

    def record_event(
        self,
        sender_email: str,
        event_type: EventType,
        user_id: str = "default",
    ) -> SenderModel:
        """Apply one behavior event to the sender's model.

        Increments total_emails and the counter matching event_type, then
        recomputes all rates and importance. Event types without a counter
        (read, snooze, ...) still count towards total_emails.

        Args:
            sender_email: Sender address
            event_type: What the user did
            user_id: Owner used when the sender has no model yet

        Returns:
            The updated model
        """
        model = self.get_or_create(sender_email, user_id)
        now = self._clock()

        model.total_emails += 1
        counter = _COUNTER_FOR_EVENT.get(event_type)
        if counter is not None:
            setattr(model, counter, getattr(model, counter) + 1)

        model.response_rate = bayesian_rate(model.responded_emails, model.total_emails)
        model.archive_rate = bayesian_rate(model.archived_emails, model.total_emails)
        model.delete_rate = bayesian_rate(model.deleted_emails, model.total_emails)

        model.last_interaction = now
        model.last_updated = now
        model.decayed_weight = 1.0
        model.importance_score = compute_importance(model, 1.0)

        logger.debug(
            "sender_model_updated",
            sender_id=model.sender_id,
            event_type=event_type,
            total_emails=model.total_emails,
        )
        return model

    def time_decay(self, model: SenderModel) -> float:
        """Recency factor e^(-lambda * days since last interaction)."""
        days = (self._clock() - model.last_interaction).total_seconds() / 86400
        return math.exp(-self.config.decay_lambda * max(days, 0.0))

    def importance_of(self, model: SenderModel) -> SenderModel:
        """Return a copy of the model with decay and importance computed now.

        The stored model is left untouched.
        """
        decay = self.time_decay(model)
        return replace(model, decayed_weight=decay, importance_score=compute_importance(model, decay))

    def rank(self, limit: int = 10) -> list[SenderModel]:
        """Top senders: VIPs first, then by read-time importance."""
        fresh = [self.importance_of(m) for m in self._models.values()]
        fresh.sort(key=lambda m: (m.is_vip, m.importance_score), reverse=True)
        return fresh[:limit]

    def should_be_vip(self, model: SenderModel) -> bool:
        """Heuristic VIP candidate: responsive, established and recent."""
        return model.response_rate > 0.7 and model.total_emails >= 5 and self.time_decay(model) > 0.5

    def mark_vip(self, sender_email: str, is_vip: bool = True) -> bool:
        """Set the VIP flag. Returns False if the sender is unknown."""
        model = self.get(sender_email)
        if model is None:
            return False
        model.is_vip = is_vip
        model.last_updated = self._clock()
        logger.info("sender_vip_changed", sender_id=model.sender_id, is_vip=is_vip)
        return True

    def track_behavior(
        self,
        user_id: str,
        email_id: str,
        sender_email: str,
        event_type: EventType,
        context_features: ContextFeatures | None = None,
        account_id: str = "",
        thread_id: str | None = None,
        duration_ms: int | None = None,
    ) -> BehaviorEvent:
        """Record a behavior event and fold it into the sender's model.

        Returns:
            The stored immutable event
        """
        now = self._clock()
        event = BehaviorEvent(
            event_id=f"evt_{uuid.uuid4().hex}",
            user_id=user_id,
            email_id=email_id,
            sender_id=sender_id_for(sender_email),
            event_type=event_type,
            timestamp=now,
            context_features=context_features or build_behavior_context(now),
            account_id=account_id,
            thread_id=thread_id,
            duration_ms=duration_ms,
        )
        self._events.insert(0, event)
        del self._events[self.config.recent_events_limit :]
        self.total_events_tracked += 1

        self.record_event(sender_email, event_type, user_id=user_id)

        logger.info(
            "behavior_tracked",
            event_type=event_type,
            email_id=email_id,
            sender_id=event.sender_id,
        )
        return event

    def recent_events(self, limit: int = 50) -> list[BehaviorEvent]:
        """Newest-first slice of the recent-history window."""
        return self._events[:limit]

    def events_by_sender(self, sender_id: str) -> list[BehaviorEvent]:
        return [e for e in self._events if e.sender_id == sender_id]

    def export(self) -> dict[str, Any]:
        """Serializable snapshot of all models and recent events."""
        return {
            "sender_models": {sid: m.to_dict() for sid, m in self._models.items()},
            "recent_events": [e.to_dict() for e in self._events],
            "total_events_tracked": self.total_events_tracked,
        }

    def clear(self) -> None:
        self._models.clear()
        self._events.clear()
        self.total_events_tracked = 0

    async def save(self, repository: Repository) -> None:
        """Persist models and the newest events through a repository."""
        await repository.save(SENDER_MODELS_KEY, {sid: m.to_dict() for sid, m in self._models.items()})
        await repository.save(
            BEHAVIOR_EVENTS_KEY,
            {
                "events": [e.to_dict() for e in self._events[:PERSISTED_EVENTS_LIMIT]],
                "total_events_tracked": self.total_events_tracked,
            },
        )
        logger.debug("sender_models_saved", count=len(self._models))

    async def load(self, repository: Repository) -> int:
        """Replace in-memory state with what the repository holds.

        Returns:
            Number of sender models loaded
        """
        models = await repository.load(SENDER_MODELS_KEY) or {}
        events = await repository.load(BEHAVIOR_EVENTS_KEY) or {}

        self._models = {sid: SenderModel.from_dict(data) for sid, data in models.items()}
        self._events = [BehaviorEvent.from_dict(e) for e in events.get("events", [])]
        self.total_events_tracked = events.get("total_events_tracked", len(self._events))

        logger.info("sender_models_loaded", count=len(self._models), events=len(self._events))
        return len(self._models)
