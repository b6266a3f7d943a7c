"""User behavior learning: per-sender statistics and trust progression."""

from boxzero.behavior.sender_model import (
    BehaviorEvent,
    ContextFeatures,
    EventType,
    SenderBehaviorModel,
    SenderModel,
    build_behavior_context,
    sender_id_for,
)
from boxzero.behavior.trust import Outcome, TrustProfile, TrustRegistry

__all__ = [
    # Sender model
    "BehaviorEvent",
    "ContextFeatures",
    "EventType",
    "SenderBehaviorModel",
    "SenderModel",
    "build_behavior_context",
    "sender_id_for",
    # Trust
    "Outcome",
    "TrustProfile",
    "TrustRegistry",
]
