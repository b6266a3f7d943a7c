"""Custom exception types for the BoxZero triage engine.

Error messages follow the same shape throughout the package:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance, where there is any)
"""


class BoxZeroError(Exception):
    """Base exception for all BoxZero errors."""

    pass


class ConfigValidationError(BoxZeroError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(BoxZeroError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class LLMUnavailableError(BoxZeroError):
    """Raised inside the Tier-3 adapter when the LLM call itself fails.

    Covers network errors, API status errors and request timeouts. The
    adapter converts this into an absent Tier-3 prediction; it never
    escapes the adapter boundary.

    Attributes:
        call: Which adapter call failed ('classify' or 'extract_actions')
    """

    def __init__(self, message: str, call: str):
        super().__init__(message)
        self.call = call


class InvalidTransitionError(BoxZeroError):
    """Raised when an action queue item is moved to a status it cannot reach.

    Attributes:
        item_id: The queue item ID
        current: Status the item is in
        requested: Status that was requested
    """

    def __init__(self, item_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot move action queue item {item_id} from '{current}' to '{requested}'. "
            "Terminal items (executed, rejected, expired, failed) cannot change status."
        )
        self.item_id = item_id
        self.current = current
        self.requested = requested


class QueueItemNotFoundError(BoxZeroError):
    """Raised when an action queue item ID does not exist in the store."""

    def __init__(self, item_id: str):
        super().__init__(f"Action queue item not found: {item_id}")
        self.item_id = item_id


class DatabaseError(BoxZeroError):
    """Raised when SQLite operations fail."""

    pass
