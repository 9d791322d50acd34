"""
Helpdesk Engine Models

Tickets, technicians, audit records and workload read models.
"""

from .ticket import (
    # Enums
    TicketStatus,
    Priority,
    Availability,
    HistoryAction,
    Capability,
    RecipientType,
    NotificationType,
    ACTIVE_STATUSES,

    # Core models
    Ticket,
    Technician,
    StatusHistoryEntry,
    TicketNote,
    PerformanceMetrics,

    # Context & messages
    ActorContext,
    NotificationRequest,

    # Read models
    TechnicianWorkload,
    WorkloadReport,

    utcnow,
)

__all__ = [
    "TicketStatus", "Priority", "Availability", "HistoryAction", "Capability",
    "RecipientType", "NotificationType", "ACTIVE_STATUSES",
    "Ticket", "Technician", "StatusHistoryEntry", "TicketNote", "PerformanceMetrics",
    "ActorContext", "NotificationRequest",
    "TechnicianWorkload", "WorkloadReport",
    "utcnow",
]
