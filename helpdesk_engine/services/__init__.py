"""
Helpdesk Engine Services

Ticket lifecycle and technician assignment.
"""

from .errors import (
    EngineError,
    NotFound,
    Forbidden,
    TechnicianUnavailable,
    CapacityExceeded,
    InvalidTransition,
    AlreadyClosed,
    ValidationError,
    Unavailable,
)
from .transactions import TransactionRunner
from .status import StatusService, TRANSITIONS, can_transition, can_complete
from .capacity import CapacityTracker, LoadMismatch
from .assignment import AssignmentCoordinator
from .completion import CompletionHandler
from .workload import WorkloadAggregator, PRIORITY_RANK
from .history import HistoryService
from .notifications import (
    NotificationDispatcher,
    LoggingDispatcher,
    NotificationEmitter,
    NotificationTemplates,
)

__all__ = [
    # Errors
    "EngineError", "NotFound", "Forbidden", "TechnicianUnavailable",
    "CapacityExceeded", "InvalidTransition", "AlreadyClosed",
    "ValidationError", "Unavailable",

    # Transactions
    "TransactionRunner",

    # Status graph
    "StatusService", "TRANSITIONS", "can_transition", "can_complete",

    # Capacity (the load invariant)
    "CapacityTracker", "LoadMismatch",

    # Lifecycle
    "AssignmentCoordinator", "CompletionHandler",

    # Read side
    "WorkloadAggregator", "PRIORITY_RANK", "HistoryService",

    # Notifications
    "NotificationDispatcher", "LoggingDispatcher",
    "NotificationEmitter", "NotificationTemplates",
]
