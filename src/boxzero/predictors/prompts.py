"""Prompts and tool definitions for the Tier-3 (Claude) adapter.

Both calls use forced tool use so the answer arrives as structured input
of a named tool. The tool schemas double as the validation source for
enum values.

Usage:
    from boxzero.predictors.prompts import CLASSIFY_EMAIL_TOOL, build_email_message

    message = build_email_message(sender, subject, body, max_body_chars=2000)
"""

from typing import Any

TRUNCATION_MARKER = "...[truncated]"

CLASSIFICATION_SYSTEM_PROMPT = (
    "You are an email classification assistant. Analyze the email you are given "
    "and classify it by calling the classify_email tool. Mark promotional, "
    "newsletter and automated mail as such; mark unsolicited bulk mail as spam "
    "and credential-harvesting mail as phishing. Use urgency 'high' only when "
    "the sender needs something soon. Set confidence to how sure you are of "
    "the category."
)

ACTION_EXTRACTION_SYSTEM_PROMPT = (
    "You are an assistant that extracts actionable items from emails. Find any "
    "tasks, meetings, deadlines, payments, follow-ups or decisions the recipient "
    "is asked for and report them with the extract_actions tool. Use ISO dates "
    "for due dates when the email states one. If there are no actions, call the "
    "tool with an empty list."
)

CLASSIFY_EMAIL_TOOL: dict[str, Any] = {
    "name": "classify_email",
    "description": "Classify an email by category, intent, urgency and risk",
    "input_schema": {
        "type": "object",
        "properties": {
            "category": {
                "type": "string",
                "enum": [
                    "urgent",
                    "important",
                    "routine",
                    "promotional",
                    "newsletter",
                    "automated",
                    "social",
                    "spam",
                ],
            },
            "intent": {
                "type": "string",
                "enum": [
                    "request",
                    "action_required",
                    "information",
                    "fyi",
                    "social",
                    "transactional",
                    "marketing",
                ],
            },
            "sentiment": {"type": "string", "enum": ["positive", "neutral", "negative"]},
            "topics": {"type": "array", "items": {"type": "string"}},
            "urgency": {"type": "string", "enum": ["high", "medium", "low", "none"]},
            "requires_response": {"type": "boolean"},
            "has_deadline": {"type": "boolean"},
            "deadline": {
                "type": ["string", "null"],
                "description": "Deadline as stated in the email, or null",
            },
            "confidence": {"type": "number", "minimum": 0.0, "maximum": 1.0},
            "is_spam": {"type": "boolean"},
            "is_phishing": {"type": "boolean"},
        },
        "required": ["category", "intent", "urgency", "requires_response", "confidence"],
    },
}

EXTRACT_ACTIONS_TOOL: dict[str, Any] = {
    "name": "extract_actions",
    "description": "Report the action items found in an email",
    "input_schema": {
        "type": "object",
        "properties": {
            "actions": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "type": {
                            "type": "string",
                            "enum": ["meeting", "task", "deadline", "payment", "follow_up", "decision"],
                        },
                        "description": {"type": "string"},
                        "due_date": {"type": ["string", "null"]},
                        "priority": {"type": "string", "enum": ["high", "medium", "low"]},
                        "assignees": {"type": "array", "items": {"type": "string"}},
                        "confidence": {"type": "number", "minimum": 0.0, "maximum": 1.0},
                    },
                    "required": ["type", "description"],
                },
            },
        },
        "required": ["actions"],
    },
}

_classify_props = CLASSIFY_EMAIL_TOOL["input_schema"]["properties"]
_action_props = EXTRACT_ACTIONS_TOOL["input_schema"]["properties"]["actions"]["items"]["properties"]

VALID_CATEGORIES = frozenset(_classify_props["category"]["enum"])
VALID_INTENTS = frozenset(_classify_props["intent"]["enum"])
VALID_SENTIMENTS = frozenset(_classify_props["sentiment"]["enum"])
VALID_URGENCIES = frozenset(_classify_props["urgency"]["enum"])
VALID_ACTION_ITEM_TYPES = frozenset(_action_props["type"]["enum"])
VALID_ACTION_PRIORITIES = frozenset(_action_props["priority"]["enum"])


def truncate_body(body: str, max_chars: int) -> str:
    """Cut the body to max_chars, appending a marker if anything was dropped."""
    if not body:
        return ""
    if len(body) <= max_chars:
        return body
    return body[:max_chars] + TRUNCATION_MARKER


def build_email_message(sender: str, subject: str, body: str, max_body_chars: int) -> str:
    """User message shared by both Tier-3 calls."""
    return (
        "Email:\n"
        f"From: {sender}\n"
        f"Subject: {subject or '(no subject)'}\n"
        f"Body: {truncate_body(body, max_body_chars)}"
    )
