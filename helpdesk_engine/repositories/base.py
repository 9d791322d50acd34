"""
Helpdesk Engine Store Contracts

A unit of work is one bounded transaction against the ticket store.
Everything the engine writes for a single request goes through one
unit of work and becomes visible together on commit, or not at all.

The technician load counter has exactly two write primitives:
- try_increment_load(): conditional increment, succeeds only below capacity
- decrement_load(): release one slot, raises TransactionConflict when the
  load is already zero
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Iterable
from uuid import UUID

from ..models.ticket import (
    Ticket,
    Technician,
    TicketStatus,
    Availability,
    StatusHistoryEntry,
    TicketNote,
    PerformanceMetrics,
)


class StoreError(Exception):
    """Base class for storage failures."""
    pass


class TransactionConflict(StoreError):
    """Concurrent transaction touched the same rows. Safe to retry."""
    pass


class StorageUnavailable(StoreError):
    """Storage timed out or could not be reached."""
    pass


class UnitOfWork(ABC):
    """
    One transaction against the store.

    Use as an async context manager. Leaving the block without commit()
    rolls back every staged write.
    """

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.finished:
            await self.rollback()

    @property
    @abstractmethod
    def finished(self) -> bool:
        """True once committed or rolled back."""

    # -------------------------------------------------------------------------
    # Tickets
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_ticket(self, ticket_id: UUID, for_update: bool = False) -> Optional[Ticket]:
        """Load a ticket. for_update locks (or version-tracks) the row."""

    @abstractmethod
    async def list_tickets(
        self,
        statuses: Optional[Iterable[TicketStatus]] = None,
        assigned_to: Optional[UUID] = None,
        unassigned_only: bool = False
    ) -> List[Ticket]:
        ...

    @abstractmethod
    async def count_active_tickets(
        self,
        technician_id: UUID,
        exclude_ticket_id: Optional[UUID] = None
    ) -> int:
        """Tickets assigned to technician with status OPEN/IN_PROGRESS/PENDING."""

    @abstractmethod
    async def add_ticket(self, ticket: Ticket) -> None:
        """Intake hook. The engine itself never creates tickets."""

    @abstractmethod
    async def save_ticket(self, ticket: Ticket) -> None:
        ...

    @abstractmethod
    async def delete_ticket(self, ticket_id: UUID) -> None:
        ...

    # -------------------------------------------------------------------------
    # Technicians
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_technician(self, technician_id: UUID) -> Optional[Technician]:
        ...

    @abstractmethod
    async def list_technicians(self, capable_only: bool = True) -> List[Technician]:
        ...

    @abstractmethod
    async def add_technician(self, technician: Technician) -> None:
        ...

    @abstractmethod
    async def try_increment_load(self, technician_id: UUID) -> bool:
        """
        Take one slot if current_load < max_capacity.

        Equivalent to
            UPDATE technicians SET current_load = current_load + 1
            WHERE id = :id AND current_load < max_capacity
        with the affected row count deciding the result.
        """

    @abstractmethod
    async def decrement_load(self, technician_id: UUID) -> None:
        """
        Release one slot. A release with no slot behind it means another
        transaction already gave the slot back: raise TransactionConflict.
        """

    @abstractmethod
    async def set_availability(self, technician_id: UUID, availability: Availability) -> None:
        ...

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    @abstractmethod
    async def add_history(self, entry: StatusHistoryEntry) -> None:
        ...

    @abstractmethod
    async def list_history(self, ticket_id: UUID) -> List[StatusHistoryEntry]:
        """Entries for a ticket, newest first."""

    @abstractmethod
    async def add_note(self, note: TicketNote) -> None:
        ...

    @abstractmethod
    async def list_notes(self, ticket_id: UUID) -> List[TicketNote]:
        """Notes for a ticket, oldest first."""

    # -------------------------------------------------------------------------
    # Performance metrics
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_metrics(self, technician_id: UUID, for_update: bool = False) -> Optional[PerformanceMetrics]:
        ...

    @abstractmethod
    async def save_metrics(self, metrics: PerformanceMetrics) -> None:
        ...

    # -------------------------------------------------------------------------
    # Transaction control
    # -------------------------------------------------------------------------

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...


class TicketStore(ABC):
    """Factory for units of work plus backend lifecycle hooks."""

    @abstractmethod
    def unit_of_work(self) -> UnitOfWork:
        ...

    async def initialize(self) -> None:
        """Create schema / open pools. No-op by default."""
        pass

    async def close(self) -> None:
        pass
