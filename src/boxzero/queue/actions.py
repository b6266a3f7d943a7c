"""Action queue items and their status state machine.

An ActionQueueItem wraps a PredictionResult that is waiting for, or has
received, a human decision. Allowed transitions:

    pending  -> approved -> executed
    pending  -> rejected
    pending  -> expired
    pending | approved -> failed   (with error_message)

executed, rejected, expired and failed are terminal. Any other transition
raises InvalidTransitionError.

Usage:
    from boxzero.queue.actions import create_action_queue_item

    item = create_action_queue_item(prediction, email, account_id="acct-1")
    item.approve()
    item.mark_executed()
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from boxzero.core.errors import InvalidTransitionError
from boxzero.predictors.types import ActionType, EmailMessage, PredictionResult

QueueStatus = Literal["pending", "approved", "rejected", "executed", "failed", "expired"]

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"approved", "rejected", "expired", "failed"}),
    "approved": frozenset({"executed", "failed"}),
    "rejected": frozenset(),
    "executed": frozenset(),
    "failed": frozenset(),
    "expired": frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ActionQueueItem:
    """A prediction held for (or resolved by) human review."""

    id: str
    user_id: str
    email_id: str
    account_id: str
    email_subject: str
    sender_email: str
    prediction: PredictionResult
    status: QueueStatus = "pending"
    created_at: datetime = field(default_factory=_utcnow)
    thread_id: str | None = None
    resolved_at: datetime | None = None
    executed_at: datetime | None = None
    error_message: str | None = None
    modified_action: ActionType | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def action(self) -> ActionType:
        """The action to execute: the user's modification, else the prediction."""
        return self.modified_action or self.prediction.final_prediction.action

    def _transition(self, new_status: QueueStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status, new_status)
        self.status = new_status

    def approve(self, modified_action: ActionType | None = None, now: datetime | None = None) -> None:
        """Approve the item, optionally replacing the predicted action."""
        self._transition("approved")
        self.modified_action = modified_action
        self.resolved_at = now or _utcnow()

    def reject(self, now: datetime | None = None) -> None:
        self._transition("rejected")
        self.resolved_at = now or _utcnow()

    def expire(self, now: datetime | None = None) -> None:
        self._transition("expired")
        self.resolved_at = now or _utcnow()

    def mark_executed(self, now: datetime | None = None) -> None:
        self._transition("executed")
        self.executed_at = now or _utcnow()

    def mark_failed(self, error_message: str, now: datetime | None = None) -> None:
        self._transition("failed")
        self.error_message = error_message
        self.resolved_at = self.resolved_at or now or _utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "email_id": self.email_id,
            "thread_id": self.thread_id,
            "account_id": self.account_id,
            "email_subject": self.email_subject,
            "sender_email": self.sender_email,
            "prediction": self.prediction.to_dict(),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "error_message": self.error_message,
            "modified_action": self.modified_action,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionQueueItem:
        def _dt(value: str | None) -> datetime | None:
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data["id"],
            user_id=data["user_id"],
            email_id=data["email_id"],
            thread_id=data.get("thread_id"),
            account_id=data["account_id"],
            email_subject=data["email_subject"],
            sender_email=data["sender_email"],
            prediction=PredictionResult.from_dict(data["prediction"]),
            status=data["status"],
            created_at=datetime.fromisoformat(data["created_at"]),
            resolved_at=_dt(data.get("resolved_at")),
            executed_at=_dt(data.get("executed_at")),
            error_message=data.get("error_message"),
            modified_action=data.get("modified_action"),
        )


def create_action_queue_item(
    prediction: PredictionResult,
    email: EmailMessage,
    account_id: str,
) -> ActionQueueItem:
    """Package a prediction into a pending queue item."""
    return ActionQueueItem(
        id=f"aq_{uuid.uuid4().hex[:16]}",
        user_id=prediction.user_id,
        email_id=prediction.email_id,
        thread_id=prediction.thread_id,
        account_id=account_id,
        email_subject=email.subject or "(no subject)",
        sender_email=email.sender or "unknown",
        prediction=prediction,
    )
