"""
Helpdesk Engine Status History

Read side of the audit trail. Entries and notes are written by the
assignment, completion and status services inside their own units of
work; this service only reads them back.
"""

from typing import List
from uuid import UUID

from ..models.ticket import StatusHistoryEntry, TicketNote
from ..repositories.base import UnitOfWork
from .errors import NotFound
from .transactions import TransactionRunner


class HistoryService:

    def __init__(self, transactions: TransactionRunner):
        self.transactions = transactions

    async def for_ticket(self, ticket_id: UUID) -> List[StatusHistoryEntry]:
        """
        Status history for a ticket, newest first.

        Raises NotFound if the ticket does not exist (including removed
        tickets, whose history is kept but no longer served here).
        """

        async def work(uow: UnitOfWork) -> List[StatusHistoryEntry]:
            if await uow.get_ticket(ticket_id) is None:
                raise NotFound(f"Ticket {ticket_id} not found")
            return await uow.list_history(ticket_id)

        return await self.transactions.read(work, f"history {ticket_id}")

    async def notes_for_ticket(
        self,
        ticket_id: UUID,
        include_internal: bool = True
    ) -> List[TicketNote]:
        """
        Notes in the order they were written.

        Customers see public notes only (include_internal=False).
        """

        async def work(uow: UnitOfWork) -> List[TicketNote]:
            if await uow.get_ticket(ticket_id) is None:
                raise NotFound(f"Ticket {ticket_id} not found")
            notes = await uow.list_notes(ticket_id)
            if not include_internal:
                notes = [n for n in notes if not n.internal]
            return notes

        return await self.transactions.read(work, f"notes {ticket_id}")
