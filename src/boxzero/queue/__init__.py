"""Action queue: review items and the auto-execution dispatcher."""

from boxzero.queue.actions import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    ActionQueueItem,
    QueueStatus,
    create_action_queue_item,
)
from boxzero.queue.dispatcher import (
    ActionDispatcher,
    AutoActionFailure,
    AutoActionResult,
    ExecuteCallback,
)

__all__ = [
    # Items
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "ActionQueueItem",
    "QueueStatus",
    "create_action_queue_item",
    # Dispatcher
    "ActionDispatcher",
    "AutoActionFailure",
    "AutoActionResult",
    "ExecuteCallback",
]
