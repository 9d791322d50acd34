"""
Helpdesk Engine Assignment Coordinator

Assign, reassign, unassign and remove tickets while keeping technician
load counters exact.

Every operation is one unit of work:
1. Load ticket (row locked) and technician(s)
2. Check preconditions, nothing written yet
3. Take / release slots, update ticket, append history and note
4. Commit
5. Emit notifications (after commit, best-effort)
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional
from uuid import UUID

from ..models.ticket import (
    Ticket,
    Technician,
    TicketStatus,
    HistoryAction,
    StatusHistoryEntry,
    TicketNote,
    ActorContext,
    utcnow,
)
from ..repositories.base import UnitOfWork
from .capacity import CapacityTracker
from .errors import NotFound, InvalidTransition, ValidationError
from .notifications import NotificationEmitter, NotificationTemplates
from .transactions import TransactionRunner

logger = logging.getLogger(__name__)


@dataclass
class AssignmentOutcome:
    ticket: Ticket
    technician: Technician
    previous_technician: Optional[Technician] = None
    changed: bool = True


class AssignmentCoordinator:
    """
    Sole writer of Ticket.assigned_to.

    Rules:
    1. Only capable, non-offline technicians receive tickets
    2. The capacity check happens inside the transaction, as the
       conditional increment itself
    3. Reassignment releases the previous technician's slot in the same
       transaction
    4. Assigning an OPEN ticket moves it to IN_PROGRESS
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

    async def assign(
        self,
        ticket_id: UUID,
        technician_id: UUID,
        actor: ActorContext,
        reason: Optional[str] = None
    ) -> Ticket:
        """
        Assign (or reassign) a ticket to a technician.

        Raises NotFound, TechnicianUnavailable or CapacityExceeded with no
        state change.
        """

        async def work(uow: UnitOfWork) -> AssignmentOutcome:
            return await self._assign(uow, ticket_id, technician_id, actor, reason)

        outcome = await self.transactions.run(work, f"assign {ticket_id}")
        if not outcome.changed:
            return outcome.ticket

        if outcome.previous_technician:
            logger.info(
                f"Ticket {ticket_id} reassigned from {outcome.previous_technician.name} "
                f"to {outcome.technician.name} by {actor.actor_id}"
            )
        else:
            logger.info(f"Ticket {ticket_id} assigned to {outcome.technician.name} by {actor.actor_id}")

        self.notifications.emit([
            NotificationTemplates.assignment_received(outcome.ticket, outcome.technician),
            NotificationTemplates.ticket_assigned(outcome.ticket, outcome.technician),
        ])
        return outcome.ticket

    async def _assign(
        self,
        uow: UnitOfWork,
        ticket_id: UUID,
        technician_id: UUID,
        actor: ActorContext,
        reason: Optional[str]
    ) -> AssignmentOutcome:
        ticket = await uow.get_ticket(ticket_id, for_update=True)
        if ticket is None:
            raise NotFound(f"Ticket {ticket_id} not found")

        if not ticket.is_active:
            raise InvalidTransition(
                f"Cannot assign a {ticket.status.value} ticket. Reopen it first."
            )

        technician = await self.capacity.load_assignable(uow, technician_id)

        if ticket.assigned_to == technician_id:
            return AssignmentOutcome(ticket=ticket, technician=technician, changed=False)

        previous = None
        previous_id = ticket.assigned_to
        if previous_id is not None:
            previous = await uow.get_technician(previous_id)

        # Capacity check and increment in one step
        await self.capacity.take_slot(uow, technician)
        if previous_id is not None:
            await self.capacity.release_slot(uow, previous_id)

        now = self.clock()
        old_status = ticket.status
        ticket.assigned_to = technician_id
        if ticket.status == TicketStatus.OPEN:
            ticket.status = TicketStatus.IN_PROGRESS
        ticket.updated_at = now
        await uow.save_ticket(ticket)

        await uow.add_history(StatusHistoryEntry(
            ticket_id=ticket.id,
            action=HistoryAction.REASSIGNED if previous_id else HistoryAction.ASSIGNED,
            from_status=old_status,
            to_status=ticket.status,
            actor_id=actor.actor_id,
            reason=reason or f"Assigned to {technician.name}",
            created_at=now,
        ))

        if previous_id:
            previous_name = previous.name if previous else str(previous_id)
            note = f"Ticket reassigned from {previous_name} to {technician.name}"
        else:
            note = f"Ticket assigned to {technician.name}"
        if reason:
            note += f". Reason: {reason}"
        await uow.add_note(TicketNote(
            ticket_id=ticket.id,
            author_id=actor.actor_id,
            content=note,
            created_at=now,
        ))

        return AssignmentOutcome(ticket=ticket, technician=technician, previous_technician=previous)

    async def unassign(
        self,
        ticket_id: UUID,
        actor: ActorContext,
        reason: Optional[str] = None
    ) -> Ticket:
        """
        Take a ticket away from its technician and put it back in the queue.

        The ticket returns to OPEN and the technician's slot is released.
        """

        async def work(uow: UnitOfWork):
            ticket = await uow.get_ticket(ticket_id, for_update=True)
            if ticket is None:
                raise NotFound(f"Ticket {ticket_id} not found")

            if ticket.assigned_to is None:
                raise ValidationError("Ticket is not assigned to anyone")

            if not ticket.is_active:
                raise InvalidTransition(
                    f"Cannot unassign a {ticket.status.value} ticket"
                )

            technician = await uow.get_technician(ticket.assigned_to)
            name = technician.name if technician else str(ticket.assigned_to)

            await self.capacity.release_slot(uow, ticket.assigned_to)

            now = self.clock()
            old_status = ticket.status
            ticket.assigned_to = None
            ticket.status = TicketStatus.OPEN
            ticket.updated_at = now
            await uow.save_ticket(ticket)

            await uow.add_history(StatusHistoryEntry(
                ticket_id=ticket.id,
                action=HistoryAction.UNASSIGNED,
                from_status=old_status,
                to_status=TicketStatus.OPEN,
                actor_id=actor.actor_id,
                reason=reason or f"Unassigned from {name}",
                created_at=now,
            ))

            suffix = f". Reason: {reason}" if reason else ""
            await uow.add_note(TicketNote(
                ticket_id=ticket.id,
                author_id=actor.actor_id,
                content=f"Ticket unassigned from {name}{suffix}",
                created_at=now,
            ))
            return ticket, name

        ticket, name = await self.transactions.run(work, f"unassign {ticket_id}")
        logger.info(f"Ticket {ticket_id} unassigned from {name} by {actor.actor_id}")
        return ticket

    async def remove(
        self,
        ticket_id: UUID,
        actor: ActorContext,
        reason: Optional[str] = None
    ) -> None:
        """
        Delete a ticket.

        An active, assigned ticket gives its slot back in the same
        transaction. History is kept.
        """

        async def work(uow: UnitOfWork) -> Ticket:
            ticket = await uow.get_ticket(ticket_id, for_update=True)
            if ticket is None:
                raise NotFound(f"Ticket {ticket_id} not found")

            if ticket.assigned_to is not None and ticket.is_active:
                await self.capacity.release_slot(uow, ticket.assigned_to)

            await uow.add_history(StatusHistoryEntry(
                ticket_id=ticket.id,
                action=HistoryAction.REMOVED,
                from_status=ticket.status,
                to_status=ticket.status,
                actor_id=actor.actor_id,
                reason=reason or "Ticket removed",
                created_at=self.clock(),
            ))
            await uow.delete_ticket(ticket.id)
            return ticket

        ticket = await self.transactions.run(work, f"remove {ticket_id}")
        logger.info(f"Ticket {ticket_id} ({ticket.status.value}) removed by {actor.actor_id}")
