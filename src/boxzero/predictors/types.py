"""Shared types for the prediction tiers and the ensemble.

Tier outputs (BayesianPrediction, LLMPrediction) are frozen dataclasses.
PredictionResult is mutable only through resolve(), which records the
user's response once a human acts on it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

ActionType = Literal[
    "archive",
    "delete",
    "star",
    "unstar",
    "mark_read",
    "mark_unread",
    "snooze",
    "reply",
    "forward",
    "create_task",
    "set_reminder",
    "move_to_folder",
    "apply_label",
    "unsubscribe",
    "keep",
]

EmailCategory = Literal[
    "urgent",
    "important",
    "routine",
    "promotional",
    "newsletter",
    "automated",
    "social",
    "spam",
]

EmailIntent = Literal[
    "request",
    "action_required",
    "information",
    "fyi",
    "social",
    "transactional",
    "marketing",
]

Sentiment = Literal["positive", "neutral", "negative"]
Urgency = Literal["high", "medium", "low", "none"]
ExtractedActionType = Literal["meeting", "task", "deadline", "payment", "follow_up", "decision"]
Priority = Literal["high", "medium", "low"]
UserResponse = Literal["approved", "rejected", "modified"]


@dataclass(frozen=True)
class EmailMessage:
    """An incoming email as supplied by the mail sync layer."""

    id: str
    sender: str
    subject: str = ""
    body: str = ""
    thread_id: str | None = None
    sender_name: str | None = None
    is_starred: bool = False
    account_id: str = ""
    recipients: tuple[str, ...] = ()
    attachment_count: int = 0
    thread_depth: int = 1
    received_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EmailMessage:
        """Build from a loosely-shaped mapping (JSON input, API payloads).

        Accepts 'from' as an alias for 'sender'.
        """
        received = data.get("received_at")
        return cls(
            id=str(data["id"]),
            sender=data.get("sender") or data.get("from") or "",
            subject=data.get("subject") or "",
            body=data.get("body") or "",
            thread_id=data.get("thread_id"),
            sender_name=data.get("sender_name"),
            is_starred=bool(data.get("is_starred", False)),
            account_id=data.get("account_id") or "",
            recipients=tuple(data.get("recipients") or ()),
            attachment_count=int(data.get("attachment_count", 0)),
            thread_depth=int(data.get("thread_depth", 1)),
            received_at=datetime.fromisoformat(received) if isinstance(received, str) else received,
        )


@dataclass(frozen=True, slots=True)
class BayesianFactors:
    response_rate: float
    archive_rate: float
    importance_score: float
    time_decay: float


@dataclass(frozen=True, slots=True)
class BayesianPrediction:
    """Tier-1 output computed from sender history."""

    sender_model_id: str
    predicted_action: ActionType
    confidence: float
    reasoning: str
    factors: BayesianFactors
    source: str = "bayesian"


@dataclass(frozen=True, slots=True)
class EmailClassification:
    """Semantic classification returned by the LLM."""

    category: EmailCategory = "routine"
    intent: EmailIntent = "information"
    sentiment: Sentiment = "neutral"
    topics: tuple[str, ...] = ()
    urgency: Urgency = "none"
    requires_response: bool = False
    has_deadline: bool = False
    deadline: str | None = None
    confidence: float = 0.3
    is_spam: bool = False
    is_phishing: bool = False


@dataclass(frozen=True, slots=True)
class ExtractedAction:
    """An action item the LLM found in the email body."""

    type: ExtractedActionType
    description: str
    priority: Priority = "medium"
    assignees: tuple[str, ...] = ()
    confidence: float = 0.5
    due_date: str | None = None


@dataclass(frozen=True, slots=True)
class ExtractedEntities:
    dates: tuple[str, ...] = ()
    people: tuple[str, ...] = ()
    tasks: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class LLMPrediction:
    """Tier-3 output derived from classification and action extraction."""

    model: str
    predicted_action: ActionType
    confidence: float
    reasoning: str
    classification: EmailClassification
    extracted_actions: tuple[ExtractedAction, ...] = ()
    extracted_entities: ExtractedEntities = field(default_factory=ExtractedEntities)
    source: str = "llm"


# Any tier output the combiner accepts
TierPrediction = BayesianPrediction | LLMPrediction


@dataclass(frozen=True, slots=True)
class EnsembleWeights:
    tier1: float
    tier2: float
    tier3: float

    @property
    def total(self) -> float:
        return self.tier1 + self.tier2 + self.tier3


@dataclass(frozen=True, slots=True)
class FinalPrediction:
    action: ActionType
    confidence: float
    reasoning: str
    requires_approval: bool


@dataclass
class PredictionResult:
    """Combined decision for one email and one user."""

    prediction_id: str
    email_id: str
    user_id: str
    final_prediction: FinalPrediction
    ensemble_weights: EnsembleWeights
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    thread_id: str | None = None
    tier1_prediction: BayesianPrediction | None = None
    tier2_prediction: None = None
    tier3_prediction: LLMPrediction | None = None
    is_resolved: bool = False
    user_response: UserResponse | None = None

    def resolve(self, response: UserResponse) -> None:
        """Record the user's disposition of this prediction."""
        self.is_resolved = True
        self.user_response = response

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PredictionResult:
        tier1 = data.get("tier1_prediction")
        tier3 = data.get("tier3_prediction")
        return cls(
            prediction_id=data["prediction_id"],
            email_id=data["email_id"],
            user_id=data["user_id"],
            final_prediction=FinalPrediction(**data["final_prediction"]),
            ensemble_weights=EnsembleWeights(**data["ensemble_weights"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            thread_id=data.get("thread_id"),
            tier1_prediction=_bayesian_from_dict(tier1) if tier1 else None,
            tier3_prediction=_llm_from_dict(tier3) if tier3 else None,
            is_resolved=data.get("is_resolved", False),
            user_response=data.get("user_response"),
        )


def _bayesian_from_dict(data: dict[str, Any]) -> BayesianPrediction:
    return BayesianPrediction(
        sender_model_id=data["sender_model_id"],
        predicted_action=data["predicted_action"],
        confidence=data["confidence"],
        reasoning=data["reasoning"],
        factors=BayesianFactors(**data["factors"]),
    )


def _llm_from_dict(data: dict[str, Any]) -> LLMPrediction:
    classification = dict(data["classification"])
    classification["topics"] = tuple(classification.get("topics", ()))
    actions = []
    for action in data.get("extracted_actions", ()):
        values = dict(action)
        values["assignees"] = tuple(values.get("assignees", ()))
        actions.append(ExtractedAction(**values))
    entities = data.get("extracted_entities") or {}
    return LLMPrediction(
        model=data["model"],
        predicted_action=data["predicted_action"],
        confidence=data["confidence"],
        reasoning=data["reasoning"],
        classification=EmailClassification(**classification),
        extracted_actions=tuple(actions),
        extracted_entities=ExtractedEntities(**{k: tuple(v) for k, v in entities.items()}),
    )
