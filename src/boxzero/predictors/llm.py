"""Tier-3 predictor: semantic classification and action extraction via Claude.

Two independent calls run concurrently for each email:

- classify_email: category, intent, urgency, spam/phishing flags
- extract_actions: tasks, meetings, deadlines and similar action items

Both use forced tool_choice so the answer arrives as structured tool input.
A JSON object in a text block is accepted as a fallback.

Error handling strategy:
- Malformed output (no tool call, bad enums, unparseable JSON): documented
  defaults, never an exception
- Call failure (API status, connection, timeout): the classification call
  failing makes the whole Tier-3 prediction absent (predict() returns None);
  the extraction call failing only empties the action list
- No app-level retries: one attempt per call, then degrade

Usage:
    from boxzero.predictors.llm import Tier3Predictor, create_anthropic_client

    predictor = Tier3Predictor(create_anthropic_client(config.llm), config.llm)
    prediction = await predictor.predict(email)  # LLMPrediction | None
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import TYPE_CHECKING, Any

import anthropic
import regex

from boxzero.config_schema import LLMConfig, LLMLoggingConfig
from boxzero.core.errors import LLMUnavailableError
from boxzero.core.logging import get_logger
from boxzero.predictors.prompts import (
    ACTION_EXTRACTION_SYSTEM_PROMPT,
    CLASSIFICATION_SYSTEM_PROMPT,
    CLASSIFY_EMAIL_TOOL,
    EXTRACT_ACTIONS_TOOL,
    VALID_ACTION_ITEM_TYPES,
    VALID_ACTION_PRIORITIES,
    VALID_CATEGORIES,
    VALID_INTENTS,
    VALID_SENTIMENTS,
    VALID_URGENCIES,
    build_email_message,
)
from boxzero.predictors.types import (
    ActionType,
    EmailClassification,
    EmailMessage,
    ExtractedAction,
    ExtractedEntities,
    LLMPrediction,
)

if TYPE_CHECKING:
    from boxzero.db.store import DatabaseStore

logger = get_logger(__name__)

# Greedy match of the outermost JSON object in free text
JSON_OBJECT_PATTERN = regex.compile(r"\{[\s\S]*\}")
REGEX_TIMEOUT = 1.0

DEFAULT_CLASSIFICATION = EmailClassification()


def create_anthropic_client(config: LLMConfig) -> anthropic.AsyncAnthropic:
    """Async Anthropic client configured for single-attempt Tier-3 calls.

    Reads ANTHROPIC_API_KEY from the environment.
    """
    return anthropic.AsyncAnthropic(
        max_retries=config.sdk_max_retries,
        timeout=config.request_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Decision table and reasoning
# ---------------------------------------------------------------------------


def action_from_classification(classification: EmailClassification) -> tuple[ActionType, float]:
    """Map a classification to a predicted action and its confidence."""
    if classification.is_spam or classification.category == "spam":
        return "delete", 0.9
    if classification.category in ("promotional", "newsletter"):
        return "archive", 0.7
    if classification.urgency == "high" or classification.requires_response:
        return "keep", 0.8
    if classification.category == "automated":
        return "archive", 0.6
    return "keep", classification.confidence


def build_llm_reasoning(
    classification: EmailClassification,
    actions: list[ExtractedAction],
    predicted_action: ActionType,
) -> str:
    """Human-readable explanation of a Tier-3 prediction."""
    parts = [f"Classified as {classification.category} email."]

    if classification.intent != "information":
        parts.append(f"Intent: {classification.intent.replace('_', ' ')}.")
    if classification.urgency != "none":
        parts.append(f"{classification.urgency.capitalize()} urgency.")
    if actions:
        parts.append(f"Found {len(actions)} action item(s).")
    if classification.requires_response:
        parts.append("Response required.")
    if classification.has_deadline and classification.deadline:
        parts.append(f"Deadline: {classification.deadline}.")

    if predicted_action == "archive":
        parts.append("Recommended for archive.")
    elif predicted_action == "delete":
        parts.append("Recommended for deletion.")
    elif predicted_action == "keep":
        parts.append("Keep in inbox for review.")

    return " ".join(parts)


def extract_entities(actions: list[ExtractedAction]) -> ExtractedEntities:
    return ExtractedEntities(
        dates=tuple(a.due_date for a in actions if a.due_date),
        people=tuple(person for a in actions for person in a.assignees),
        tasks=tuple(a.description for a in actions if a.type == "task"),
    )


# ---------------------------------------------------------------------------
# Tier-3 predictor
# ---------------------------------------------------------------------------


class Tier3Predictor:
    """Claude-backed classifier and action extractor.

    Attributes:
        config: Model, timeout and prompt-size settings
    """

    def __init__(
        self,
        client: anthropic.AsyncAnthropic,
        config: LLMConfig | None = None,
        store: DatabaseStore | None = None,
        logging_config: LLMLoggingConfig | None = None,
    ):
        """Initialize the predictor.

        Args:
            client: Async Anthropic client
            config: LLM settings
            store: Database store for request logging (optional)
            logging_config: Request logging switches
        """
        self._client = client
        self.config = config or LLMConfig()
        self._store = store
        self._logging = logging_config or LLMLoggingConfig()

    @property
    def model(self) -> str:
        return self.config.model

    async def predict(self, email: EmailMessage) -> LLMPrediction | None:
        """Classify an email and extract its action items.

        Returns:
            LLMPrediction, or None when the classification call itself failed
            (the ensemble treats that exactly like "LLM not invoked")
        """
        classification, actions = await asyncio.gather(
            self._classify(email.sender, email.subject, email.body, email.id),
            self._extract(email.sender, email.subject, email.body, email.id),
            return_exceptions=True,
        )

        if isinstance(classification, LLMUnavailableError):
            logger.warning("tier3_unavailable", email_id=email.id, error=str(classification))
            return None
        if isinstance(classification, BaseException):
            raise classification

        if isinstance(actions, LLMUnavailableError):
            logger.warning("tier3_extraction_unavailable", email_id=email.id, error=str(actions))
            actions = []
        elif isinstance(actions, BaseException):
            raise actions

        predicted_action, confidence = action_from_classification(classification)

        logger.info(
            "tier3_prediction",
            email_id=email.id,
            category=classification.category,
            action=predicted_action,
            confidence=confidence,
            action_items=len(actions),
        )
        return LLMPrediction(
            model=self.config.model,
            predicted_action=predicted_action,
            confidence=confidence,
            reasoning=build_llm_reasoning(classification, actions, predicted_action),
            classification=classification,
            extracted_actions=tuple(actions),
            extracted_entities=extract_entities(actions),
        )

    async def classify_email(
        self,
        sender: str,
        subject: str,
        body: str,
        email_id: str | None = None,
    ) -> EmailClassification:
        """Classify an email; any failure yields the default classification."""
        try:
            return await self._classify(sender, subject, body, email_id)
        except LLMUnavailableError:
            return DEFAULT_CLASSIFICATION

    async def extract_actions(
        self,
        sender: str,
        subject: str,
        body: str,
        email_id: str | None = None,
    ) -> list[ExtractedAction]:
        """Extract action items; any failure yields an empty list."""
        try:
            return await self._extract(sender, subject, body, email_id)
        except LLMUnavailableError:
            return []

    async def _classify(self, sender: str, subject: str, body: str, email_id: str | None) -> EmailClassification:
        data = await self._call(
            call="classify",
            tool=CLASSIFY_EMAIL_TOOL,
            system=CLASSIFICATION_SYSTEM_PROMPT,
            message=build_email_message(sender, subject, body, self.config.max_body_chars),
            email_id=email_id,
        )
        if data is None:
            return DEFAULT_CLASSIFICATION
        return _parse_classification(data, email_id)

    async def _extract(self, sender: str, subject: str, body: str, email_id: str | None) -> list[ExtractedAction]:
        data = await self._call(
            call="extract_actions",
            tool=EXTRACT_ACTIONS_TOOL,
            system=ACTION_EXTRACTION_SYSTEM_PROMPT,
            message=build_email_message(sender, subject, body, self.config.max_body_chars),
            email_id=email_id,
        )
        if data is None:
            return []
        return _parse_actions(data, email_id)

    async def _call(
        self,
        call: str,
        tool: dict[str, Any],
        system: str,
        message: str,
        email_id: str | None,
    ) -> dict[str, Any] | None:
        """Make one forced-tool-use request.

        Returns:
            The tool input (or JSON object parsed from text), None if the
            response held neither

        Raises:
            LLMUnavailableError: On API errors or timeout
        """
        messages = [{"role": "user", "content": message}]
        start_time = time.monotonic()

        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=self.config.model,
                    max_tokens=self.config.max_tokens,
                    temperature=self.config.temperature,
                    system=system,
                    messages=messages,
                    tools=[tool],
                    tool_choice={"type": "tool", "name": tool["name"]},
                ),
                timeout=self.config.request_timeout_seconds,
            )
        except TimeoutError as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            error = f"Timed out after {self.config.request_timeout_seconds:g}s"
            logger.error("tier3_timeout", call=call, email_id=email_id, duration_ms=duration_ms)
            await self._log_request(call, system, messages, None, None, duration_ms, email_id, error)
            raise LLMUnavailableError(f"Tier-3 {call} call timed out for email {email_id}", call=call) from e
        except anthropic.APIStatusError as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            error = f"API status error {e.status_code}: {e.message}"
            logger.error("tier3_api_error", call=call, email_id=email_id, status_code=e.status_code)
            await self._log_request(call, system, messages, None, None, duration_ms, email_id, error)
            raise LLMUnavailableError(f"Tier-3 {call} call failed: {error}", call=call) from e
        except anthropic.APIError as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            error = f"API connection error: {e}"
            logger.error("tier3_connection_error", call=call, email_id=email_id, error=str(e))
            await self._log_request(call, system, messages, None, None, duration_ms, email_id, error)
            raise LLMUnavailableError(f"Tier-3 {call} call failed: {error}", call=call) from e

        duration_ms = int((time.monotonic() - start_time) * 1000)
        data = _extract_tool_input(response, tool["name"])
        if data is None:
            data = _extract_json_text(response)
        error = None if data is not None else "No tool call or JSON object in response"
        if error:
            logger.warning("tier3_malformed_response", call=call, email_id=email_id)

        await self._log_request(call, system, messages, response, data, duration_ms, email_id, error)
        return data

    async def _log_request(
        self,
        call: str,
        system: str,
        messages: list[dict[str, Any]],
        response: Any,
        tool_call: dict[str, Any] | None,
        duration_ms: int,
        email_id: str | None,
        error: str | None,
    ) -> None:
        """Write the request to llm_request_log if a store is attached."""
        if self._store is None or not self._logging.enabled:
            return

        try:
            prompt_data: dict[str, Any] = {"messages": messages if self._logging.log_prompts else []}
            if self._logging.log_prompts:
                prompt_data["system"] = system

            response_data: dict[str, Any] | None = None
            input_tokens: int | None = None
            output_tokens: int | None = None
            if response is not None:
                input_tokens = response.usage.input_tokens
                output_tokens = response.usage.output_tokens
                if self._logging.log_responses:
                    response_data = {
                        "id": response.id,
                        "model": response.model,
                        "stop_reason": response.stop_reason,
                        "content": [_content_block_to_dict(block) for block in response.content],
                    }

            await self._store.log_llm_request(
                task_type=call,
                model=self.config.model,
                prompt=prompt_data,
                response=response_data,
                tool_call=tool_call,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=duration_ms,
                email_id=email_id,
                error=error,
            )
        except Exception as e:
            # Logging failures should never block prediction
            logger.warning("llm_log_failed", error=str(e), email_id=email_id)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _extract_tool_input(response: Any, tool_name: str) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == tool_name and isinstance(block.input, dict):
            return block.input
    return None


def _extract_json_text(response: Any) -> dict[str, Any] | None:
    """Pull a JSON object out of text blocks (may be wrapped in markdown)."""
    for block in response.content:
        if block.type != "text":
            continue
        try:
            match = JSON_OBJECT_PATTERN.search(block.text, timeout=REGEX_TIMEOUT)
        except TimeoutError:
            continue
        if not match:
            continue
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _field(data: dict[str, Any], name: str, camel: str | None = None) -> Any:
    if name in data:
        return data[name]
    return data.get(camel) if camel else None


def _confidence(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return default
    return max(0.0, min(1.0, float(value)))


def _flag(value: Any) -> bool:
    """Only a JSON boolean true counts; "false", 1 and the like do not."""
    return value is True


def _choice(value: Any, valid: frozenset[str], default: str) -> str:
    return value if isinstance(value, str) and value in valid else default


def _parse_classification(data: dict[str, Any], email_id: str | None) -> EmailClassification:
    """Build a classification, replacing invalid fields with defaults."""
    default = DEFAULT_CLASSIFICATION
    category = data.get("category")
    if not isinstance(category, str) or category not in VALID_CATEGORIES:
        # Without a valid category the rest of the answer is not trusted
        logger.warning("tier3_invalid_classification", email_id=email_id, category=category)
        return default

    topics = data.get("topics")
    deadline = data.get("deadline")
    return EmailClassification(
        category=category,
        intent=_choice(data.get("intent"), VALID_INTENTS, default.intent),
        sentiment=_choice(data.get("sentiment"), VALID_SENTIMENTS, default.sentiment),
        topics=tuple(t for t in topics if isinstance(t, str)) if isinstance(topics, list) else (),
        urgency=_choice(data.get("urgency"), VALID_URGENCIES, default.urgency),
        requires_response=_flag(_field(data, "requires_response", "requiresResponse")),
        has_deadline=_flag(_field(data, "has_deadline", "hasDeadline")),
        deadline=deadline if isinstance(deadline, str) and deadline else None,
        confidence=_confidence(data.get("confidence"), default.confidence),
        is_spam=_flag(_field(data, "is_spam", "isSpam")),
        is_phishing=_flag(_field(data, "is_phishing", "isPhishing")),
    )


def _parse_actions(data: dict[str, Any], email_id: str | None) -> list[ExtractedAction]:
    """Build action items, skipping entries that are not usable."""
    raw = data.get("actions")
    if not isinstance(raw, list):
        logger.warning("tier3_invalid_actions", email_id=email_id)
        return []

    actions: list[ExtractedAction] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        action_type = item.get("type")
        description = item.get("description")
        if not isinstance(action_type, str) or action_type not in VALID_ACTION_ITEM_TYPES:
            continue
        if not isinstance(description, str) or not description:
            continue
        assignees = item.get("assignees")
        due_date = _field(item, "due_date", "dueDate")
        actions.append(
            ExtractedAction(
                type=action_type,
                description=description,
                priority=_choice(item.get("priority"), VALID_ACTION_PRIORITIES, "medium"),
                assignees=tuple(a for a in assignees if isinstance(a, str)) if isinstance(assignees, list) else (),
                confidence=_confidence(item.get("confidence"), 0.5),
                due_date=due_date if isinstance(due_date, str) and due_date else None,
            )
        )
    return actions


def _content_block_to_dict(block: Any) -> dict[str, Any]:
    if block.type == "text":
        return {"type": "text", "text": block.text}
    if block.type == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {"type": block.type}
