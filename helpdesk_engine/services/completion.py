"""
Helpdesk Engine Completion Handler

Resolve or close a ticket in one unit of work:
- Status, completion timestamp, resolution notes and time spent
- Release the assignee's slot when the ticket leaves the active set
- Fold the resolution time into the assignee's performance metrics
- Mark the assignee AVAILABLE once they hold no active tickets
- History entry and a public resolution note

The customer is notified after commit.
"""

import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from ..models.ticket import (
    Ticket,
    TicketStatus,
    Availability,
    HistoryAction,
    StatusHistoryEntry,
    TicketNote,
    PerformanceMetrics,
    ActorContext,
    utcnow,
)
from ..repositories.base import UnitOfWork
from .capacity import CapacityTracker
from .errors import NotFound, Forbidden, InvalidTransition, AlreadyClosed, ValidationError
from .notifications import NotificationEmitter, NotificationTemplates
from .status import COMPLETION_STATUSES, can_complete
from .transactions import TransactionRunner

logger = logging.getLogger(__name__)


RESOLUTION_BASELINES = ("created", "reopened")


class CompletionHandler:
    """
    Single path into RESOLVED and CLOSED.

    Resolution time is measured from created_at, or from the last reopen
    when the handler is built with resolution_baseline="reopened".
    Closing an already resolved ticket keeps the resolution time measured
    at resolve and does not count a second resolution.
    """

    def __init__(
        self,
        transactions: TransactionRunner,
        capacity: CapacityTracker,
        notifications: NotificationEmitter,
        clock: Callable = utcnow,
        resolution_baseline: str = "created"
    ):
        if resolution_baseline not in RESOLUTION_BASELINES:
            raise ValueError(f"Unknown resolution baseline: {resolution_baseline}")
        self.transactions = transactions
        self.capacity = capacity
        self.notifications = notifications
        self.clock = clock
        self.resolution_baseline = resolution_baseline

    async def complete(
        self,
        ticket_id: UUID,
        actor: ActorContext,
        target_status: TicketStatus,
        resolution_notes: str,
        time_spent_hours: Optional[float] = None
    ) -> Ticket:
        if target_status not in COMPLETION_STATUSES:
            raise ValidationError("Completion status must be resolved or closed")

        notes = (resolution_notes or "").strip()
        if not notes:
            raise ValidationError("Resolution notes are required")

        if time_spent_hours is not None and time_spent_hours < 0:
            raise ValidationError("Time spent cannot be negative")

        async def work(uow: UnitOfWork) -> Ticket:
            return await self._complete(uow, ticket_id, actor, target_status, notes, time_spent_hours)

        ticket = await self.transactions.run(work, f"complete {ticket_id}")
        logger.info(
            f"Ticket {ticket_id} {target_status.value} by {actor.actor_id} "
            f"after {ticket.resolution_time_hours:.2f}h"
        )

        self.notifications.emit([NotificationTemplates.ticket_completed(ticket)])
        return ticket

    async def _complete(
        self,
        uow: UnitOfWork,
        ticket_id: UUID,
        actor: ActorContext,
        target_status: TicketStatus,
        notes: str,
        time_spent_hours: Optional[float]
    ) -> Ticket:
        ticket = await uow.get_ticket(ticket_id, for_update=True)
        if ticket is None:
            raise NotFound(f"Ticket {ticket_id} not found")

        if ticket.status == TicketStatus.CLOSED:
            raise AlreadyClosed(f"Ticket {ticket_id} is already closed")

        if not actor.owns(ticket):
            raise Forbidden("You can only complete tickets assigned to you")

        if not can_complete(ticket.status, target_status):
            raise InvalidTransition(
                f"Cannot complete ticket from {ticket.status.value} to {target_status.value}"
            )

        now = self.clock()
        old_status = ticket.status
        leaving_active = ticket.is_active

        if leaving_active or ticket.resolution_time_hours is None:
            ticket.resolution_time_hours = self._elapsed_hours(ticket, now)

        ticket.status = target_status
        ticket.completed_at = now
        ticket.updated_at = now
        ticket.resolution_notes = notes
        if time_spent_hours is not None:
            ticket.time_spent_hours = time_spent_hours
        await uow.save_ticket(ticket)

        if leaving_active and ticket.assigned_to is not None:
            await self._settle_technician(uow, ticket, now)

        await uow.add_history(StatusHistoryEntry(
            ticket_id=ticket.id,
            action=HistoryAction.RESOLVED if target_status == TicketStatus.RESOLVED else HistoryAction.CLOSED,
            from_status=old_status,
            to_status=target_status,
            actor_id=actor.actor_id,
            reason=f"Ticket {target_status.value}: {notes}",
            created_at=now,
        ))

        await uow.add_note(TicketNote(
            ticket_id=ticket.id,
            author_id=actor.actor_id,
            content=f"**Resolution:** {notes}",
            internal=False,
            created_at=now,
        ))

        return ticket

    async def _settle_technician(self, uow: UnitOfWork, ticket: Ticket, now: datetime) -> None:
        technician_id = ticket.assigned_to
        await self.capacity.release_slot(uow, technician_id)

        metrics = await uow.get_metrics(technician_id, for_update=True)
        if metrics is None:
            metrics = PerformanceMetrics(technician_id=technician_id)
        await uow.save_metrics(metrics.record_resolution(ticket.resolution_time_hours, now))

        remaining = await uow.count_active_tickets(technician_id, exclude_ticket_id=ticket.id)
        if remaining == 0:
            await uow.set_availability(technician_id, Availability.AVAILABLE)

    def _elapsed_hours(self, ticket: Ticket, now: datetime) -> float:
        start = ticket.created_at
        if self.resolution_baseline == "reopened" and ticket.reopened_at is not None:
            start = ticket.reopened_at
        return max(0.0, (now - start).total_seconds() / 3600)
