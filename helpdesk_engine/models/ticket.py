"""
Helpdesk Engine Ticket Model

Tickets, technicians and the records the lifecycle engine writes.

Core principles:
1. Ticket status only moves along the status graph
2. Technician current_load = number of active tickets assigned to them
3. History and notes are append-only
4. Performance metrics are written by the completion handler only
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, FrozenSet
from uuid import UUID, uuid4
from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Naive UTC timestamp, the engine's single clock format."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS
# =============================================================================

class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"        # Waiting on customer or third party
    RESOLVED = "resolved"
    CLOSED = "closed"          # Terminal


# Statuses that occupy a technician slot
ACTIVE_STATUSES = frozenset({
    TicketStatus.OPEN,
    TicketStatus.IN_PROGRESS,
    TicketStatus.PENDING,
})


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Availability(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class HistoryAction(str, Enum):
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    UNASSIGNED = "unassigned"
    STATUS_CHANGED = "status_changed"
    REOPENED = "reopened"
    RESOLVED = "resolved"
    CLOSED = "closed"
    REMOVED = "removed"


class Capability(str, Enum):
    """Capabilities granted by the permission gate before the engine runs."""
    OVERRIDE_OWNERSHIP = "override_ownership"  # Admin: act on any ticket


class RecipientType(str, Enum):
    CUSTOMER = "customer"
    EMPLOYEE = "employee"


class NotificationType(str, Enum):
    TICKET_UPDATE = "ticket_update"
    ASSIGNMENT = "assignment"


# =============================================================================
# CORE MODELS
# =============================================================================

class Ticket(BaseModel):
    """
    A customer support request.

    Created by intake, then mutated only by the assignment, completion
    and status services.
    """
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    title: str
    customer_id: UUID

    status: TicketStatus = TicketStatus.OPEN
    priority: Priority = Priority.MEDIUM

    # Assignment
    assigned_to: Optional[UUID] = None

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    reopened_at: Optional[datetime] = None

    # Resolution
    resolution_notes: Optional[str] = None
    resolution_time_hours: Optional[float] = None
    time_spent_hours: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class Technician(BaseModel):
    """
    An employee who can be assigned tickets.

    current_load is authoritative and only changes through the store's
    slot primitives (try_increment_load / decrement_load).
    """
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    name: str

    can_handle_tickets: bool = True
    availability: Availability = Availability.AVAILABLE

    # Capacity
    max_capacity: int = Field(default=5, ge=1)
    current_load: int = Field(default=0, ge=0)


class StatusHistoryEntry(BaseModel):
    """Immutable audit record of a status or assignment change."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID = Field(default_factory=uuid4)
    ticket_id: UUID

    action: HistoryAction
    from_status: Optional[TicketStatus] = None
    to_status: TicketStatus

    actor_id: UUID
    reason: str

    created_at: datetime = Field(default_factory=utcnow)


class TicketNote(BaseModel):
    """Free-text audit note attached to a ticket."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID = Field(default_factory=uuid4)
    ticket_id: UUID
    author_id: UUID
    content: str
    internal: bool = True  # Public notes are shown to the customer
    created_at: datetime = Field(default_factory=utcnow)


class PerformanceMetrics(BaseModel):
    """Per-technician aggregate, updated on each resolution."""
    model_config = ConfigDict(from_attributes=True)

    technician_id: UUID
    total_resolved: int = 0
    average_resolution_hours: float = 0.0
    # Customer rating average, written by the feedback flow outside this engine
    average_rating: float = 0.0
    resolved_this_month: int = 0
    last_updated: Optional[datetime] = None

    def record_resolution(self, hours: float, at: datetime) -> "PerformanceMetrics":
        """
        Fold one resolution into the running average.

        new_avg = (old_avg * old_count + hours) / (old_count + 1)
        """
        count = self.total_resolved + 1
        average = (self.average_resolution_hours * self.total_resolved + hours) / count

        same_month = (
            self.last_updated is not None
            and (self.last_updated.year, self.last_updated.month) == (at.year, at.month)
        )
        this_month = self.resolved_this_month + 1 if same_month else 1

        return self.model_copy(update={
            "total_resolved": count,
            "average_resolution_hours": average,
            "resolved_this_month": this_month,
            "last_updated": at,
        })


# =============================================================================
# CONTEXT & MESSAGES
# =============================================================================

class ActorContext(BaseModel):
    """
    Who is calling, as resolved by the permission gate.

    Passed explicitly into every engine call.
    """
    model_config = ConfigDict(frozen=True)

    actor_id: UUID
    capabilities: FrozenSet[Capability] = frozenset()

    @property
    def can_override_ownership(self) -> bool:
        return Capability.OVERRIDE_OWNERSHIP in self.capabilities

    def owns(self, ticket: Ticket) -> bool:
        """Assignee of the ticket, or holder of the ownership override."""
        return ticket.assigned_to == self.actor_id or self.can_override_ownership


class NotificationRequest(BaseModel):
    """Trigger handed to the external notification dispatcher."""
    model_config = ConfigDict(frozen=True)

    recipient_id: UUID
    recipient_type: RecipientType
    notification_type: NotificationType
    title: str
    message: str
    ticket_id: Optional[UUID] = None


# =============================================================================
# READ MODELS
# =============================================================================

class TechnicianWorkload(BaseModel):
    """Workload snapshot for one technician."""
    technician_id: UUID
    name: str
    availability: Availability
    current_load: int
    max_capacity: int
    workload_percentage: float
    available_slots: int
    can_take_more_tickets: bool
    active_ticket_ids: List[UUID] = Field(default_factory=list)
    performance: Optional[PerformanceMetrics] = None


class WorkloadReport(BaseModel):
    technicians: List[TechnicianWorkload]
    unassigned_queue: List[Ticket]
    generated_at: datetime = Field(default_factory=utcnow)
