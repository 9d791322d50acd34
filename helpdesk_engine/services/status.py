"""
Helpdesk Engine Status State Machine

The status graph every ticket moves along:

    OPEN        -> IN_PROGRESS, CLOSED
    IN_PROGRESS -> PENDING, RESOLVED, OPEN
    PENDING     -> IN_PROGRESS, RESOLVED
    RESOLVED    -> CLOSED, IN_PROGRESS   (reopen)
    CLOSED      -> (terminal)

Completion may additionally resolve an OPEN ticket directly.
Assignment (OPEN -> IN_PROGRESS) and unassignment (-> OPEN) move status
as a side effect and do not go through change_status().
"""

import logging
from typing import Callable, Dict, FrozenSet, Optional, Tuple
from uuid import UUID

from ..models.ticket import (
    Ticket,
    TicketStatus,
    HistoryAction,
    StatusHistoryEntry,
    TicketNote,
    ActorContext,
    utcnow,
)
from ..repositories.base import UnitOfWork
from .capacity import CapacityTracker
from .errors import NotFound, Forbidden, InvalidTransition, ValidationError
from .notifications import NotificationEmitter, NotificationTemplates
from .transactions import TransactionRunner

logger = logging.getLogger(__name__)


TRANSITIONS: Dict[TicketStatus, FrozenSet[TicketStatus]] = {
    TicketStatus.OPEN: frozenset({TicketStatus.IN_PROGRESS, TicketStatus.CLOSED}),
    TicketStatus.IN_PROGRESS: frozenset({TicketStatus.PENDING, TicketStatus.RESOLVED, TicketStatus.OPEN}),
    TicketStatus.PENDING: frozenset({TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED}),
    TicketStatus.RESOLVED: frozenset({TicketStatus.CLOSED, TicketStatus.IN_PROGRESS}),
    TicketStatus.CLOSED: frozenset(),
}

# Completion-only shortcut: resolve without passing through IN_PROGRESS
DIRECT_RESOLUTION = frozenset({(TicketStatus.OPEN, TicketStatus.RESOLVED)})

COMPLETION_STATUSES = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})


def can_transition(from_status: TicketStatus, to_status: TicketStatus) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def can_complete(from_status: TicketStatus, to_status: TicketStatus) -> bool:
    if to_status not in COMPLETION_STATUSES:
        return False
    return can_transition(from_status, to_status) or (from_status, to_status) in DIRECT_RESOLUTION


def ensure_transition(from_status: TicketStatus, to_status: TicketStatus) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransition(
            f"Cannot change status from {from_status.value} to {to_status.value}"
        )


class StatusService:
    """
    Non-completion status changes (pending, back to open, reopen).

    Resolving and closing go through CompletionHandler, which also
    updates metrics and notes.
    """

    def __init__(
        self,
        transactions: TransactionRunner,
        capacity: CapacityTracker,
        notifications: NotificationEmitter,
        clock: Callable = utcnow
    ):
        self.transactions = transactions
        self.capacity = capacity
        self.notifications = notifications
        self.clock = clock

    async def change_status(
        self,
        ticket_id: UUID,
        actor: ActorContext,
        new_status: TicketStatus,
        reason: Optional[str] = None
    ) -> Ticket:
        async def work(uow: UnitOfWork) -> Tuple[Ticket, TicketStatus]:
            return await self._apply(uow, ticket_id, actor, new_status, reason)

        ticket, old_status = await self.transactions.run(work, f"change_status {ticket_id}")
        logger.info(
            f"Ticket {ticket_id} status {old_status.value} -> {new_status.value} "
            f"by {actor.actor_id}"
        )

        self.notifications.emit([
            NotificationTemplates.status_changed(ticket, old_status, new_status)
        ])
        return ticket

    async def _apply(
        self,
        uow: UnitOfWork,
        ticket_id: UUID,
        actor: ActorContext,
        new_status: TicketStatus,
        reason: Optional[str]
    ) -> Tuple[Ticket, TicketStatus]:
        ticket = await uow.get_ticket(ticket_id, for_update=True)
        if ticket is None:
            raise NotFound(f"Ticket {ticket_id} not found")

        ensure_transition(ticket.status, new_status)
        if new_status in COMPLETION_STATUSES:
            raise ValidationError(
                f"Use ticket completion to move a ticket to {new_status.value}"
            )

        if not actor.owns(ticket):
            raise Forbidden("You can only change the status of tickets assigned to you")

        old_status = ticket.status
        reopening = not ticket.is_active

        now = self.clock()
        if reopening:
            # Back into the active set: the assignee needs a free slot again
            if ticket.assigned_to is not None:
                technician = await uow.get_technician(ticket.assigned_to)
                if technician is None:
                    raise NotFound(f"Technician {ticket.assigned_to} not found")
                await self.capacity.take_slot(uow, technician)
            ticket.completed_at = None
            ticket.reopened_at = now

        ticket.status = new_status
        ticket.updated_at = now
        await uow.save_ticket(ticket)

        await uow.add_history(StatusHistoryEntry(
            ticket_id=ticket.id,
            action=HistoryAction.REOPENED if reopening else HistoryAction.STATUS_CHANGED,
            from_status=old_status,
            to_status=new_status,
            actor_id=actor.actor_id,
            reason=reason or f"Status changed to {new_status.value}",
            created_at=now,
        ))

        suffix = f". Reason: {reason}" if reason else ""
        await uow.add_note(TicketNote(
            ticket_id=ticket.id,
            author_id=actor.actor_id,
            content=f"Status changed from {old_status.value} to {new_status.value}{suffix}",
            created_at=now,
        ))

        return ticket, old_status
