"""Run lifecycle: registry, events, cancellation and the orchestrator."""

from .cancellation import CancellationToken
from .events import (
    DEFAULT_QUEUE_SIZE,
    OUTCOME_KINDS,
    TERMINAL_KINDS,
    EventChannel,
    EventKind,
    RunEvent,
    Subscription,
)
from .registry import SETTLED_STATUSES, RunRegistry, RunStatus, RunView
from .orchestrator import MAX_MESSAGE_LENGTH, Attempt, RunOrchestrator, truncate_message

__all__ = [
    # Cancellation
    "CancellationToken",
    # Events
    "EventChannel",
    "EventKind",
    "RunEvent",
    "Subscription",
    "DEFAULT_QUEUE_SIZE",
    "TERMINAL_KINDS",
    "OUTCOME_KINDS",
    # Registry
    "RunRegistry",
    "RunStatus",
    "RunView",
    "SETTLED_STATUSES",
    # Orchestrator
    "RunOrchestrator",
    "Attempt",
    "MAX_MESSAGE_LENGTH",
    "truncate_message",
]
