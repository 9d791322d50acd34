"""
In-memory ticket store.

Safe for parallel request handlers (threads or event loops). The internal
mutex only guards dictionary reads and the commit apply step; it is never
held across an await.

Isolation:
- Slot reservations are taken atomically when try_increment_load() runs and
  count against capacity immediately, so two transactions can never both
  get the last slot. They turn into load on commit and are released on
  rollback.
- Rows read with for_update=True (tickets, metrics) or saved are
  version-checked at commit; a concurrent change raises TransactionConflict.
- Releases are checked against the committed load at commit, so two
  transactions can never both give back the same slot.
"""

import logging
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Iterable, Tuple
from uuid import UUID

from ..models.ticket import (
    Ticket,
    Technician,
    TicketStatus,
    Availability,
    StatusHistoryEntry,
    TicketNote,
    PerformanceMetrics,
    ACTIVE_STATUSES,
)
from .base import TicketStore, UnitOfWork, TransactionConflict

logger = logging.getLogger(__name__)

_DELETED = object()


class InMemoryStore(TicketStore):
    """Process-local store, used for tests and single-node deployments."""

    def __init__(self):
        self._lock = threading.Lock()

        self._tickets: Dict[UUID, Ticket] = {}
        self._technicians: Dict[UUID, Technician] = {}
        self._metrics: Dict[UUID, PerformanceMetrics] = {}
        self._history: List[StatusHistoryEntry] = []
        self._notes: List[TicketNote] = []

        self._versions: Dict[Tuple[str, UUID], int] = defaultdict(int)
        self._reserved: Dict[UUID, int] = defaultdict(int)

    def unit_of_work(self) -> "InMemoryUnitOfWork":
        return InMemoryUnitOfWork(self)

    # Seeding helpers for intake and fixtures

    def put_technician(self, technician: Technician) -> Technician:
        with self._lock:
            self._technicians[technician.id] = technician.model_copy()
        return technician

    def put_ticket(self, ticket: Ticket) -> Ticket:
        with self._lock:
            self._tickets[ticket.id] = ticket.model_copy()
        return ticket

    def put_metrics(self, metrics: PerformanceMetrics) -> PerformanceMetrics:
        with self._lock:
            self._metrics[metrics.technician_id] = metrics.model_copy()
        return metrics


class InMemoryUnitOfWork(UnitOfWork):
    """Staged writes over an InMemoryStore, applied atomically on commit."""

    def __init__(self, store: InMemoryStore):
        self._store = store
        self._finished = False

        self._read_versions: Dict[Tuple[str, UUID], int] = {}

        self._tickets: Dict[UUID, object] = {}
        self._new_technicians: Dict[UUID, Technician] = {}
        self._reservations: Dict[UUID, int] = defaultdict(int)
        self._releases: Dict[UUID, int] = defaultdict(int)
        self._availability: Dict[UUID, Availability] = {}
        self._metrics: Dict[UUID, PerformanceMetrics] = {}
        self._history: List[StatusHistoryEntry] = []
        self._notes: List[TicketNote] = []

    @property
    def finished(self) -> bool:
        return self._finished

    def _track(self, kind: str, row_id: UUID) -> None:
        key = (kind, row_id)
        if key not in self._read_versions:
            self._read_versions[key] = self._store._versions[key]

    # -------------------------------------------------------------------------
    # Tickets
    # -------------------------------------------------------------------------

    def _ticket_view(self) -> Dict[UUID, Ticket]:
        """Committed tickets overlaid with this transaction's staged writes."""
        with self._store._lock:
            view = dict(self._store._tickets)
        for ticket_id, staged in self._tickets.items():
            if staged is _DELETED:
                view.pop(ticket_id, None)
            else:
                view[ticket_id] = staged
        return view

    async def get_ticket(self, ticket_id: UUID, for_update: bool = False) -> Optional[Ticket]:
        staged = self._tickets.get(ticket_id)
        if staged is _DELETED:
            return None
        if staged is not None:
            return staged.model_copy()

        with self._store._lock:
            ticket = self._store._tickets.get(ticket_id)
            if for_update:
                self._track("ticket", ticket_id)
        return ticket.model_copy() if ticket else None

    async def list_tickets(
        self,
        statuses: Optional[Iterable[TicketStatus]] = None,
        assigned_to: Optional[UUID] = None,
        unassigned_only: bool = False
    ) -> List[Ticket]:
        wanted = set(statuses) if statuses is not None else None
        result = []
        for ticket in self._ticket_view().values():
            if wanted is not None and ticket.status not in wanted:
                continue
            if assigned_to is not None and ticket.assigned_to != assigned_to:
                continue
            if unassigned_only and ticket.assigned_to is not None:
                continue
            result.append(ticket.model_copy())
        return result

    async def count_active_tickets(
        self,
        technician_id: UUID,
        exclude_ticket_id: Optional[UUID] = None
    ) -> int:
        return sum(
            1 for ticket in self._ticket_view().values()
            if ticket.assigned_to == technician_id
            and ticket.status in ACTIVE_STATUSES
            and ticket.id != exclude_ticket_id
        )

    async def add_ticket(self, ticket: Ticket) -> None:
        self._tickets[ticket.id] = ticket.model_copy()

    async def save_ticket(self, ticket: Ticket) -> None:
        with self._store._lock:
            self._track("ticket", ticket.id)
        self._tickets[ticket.id] = ticket.model_copy()

    async def delete_ticket(self, ticket_id: UUID) -> None:
        with self._store._lock:
            self._track("ticket", ticket_id)
        self._tickets[ticket_id] = _DELETED

    # -------------------------------------------------------------------------
    # Technicians
    # -------------------------------------------------------------------------

    def _technician_view(self, technician: Technician) -> Technician:
        load = (
            technician.current_load
            + self._reservations.get(technician.id, 0)
            - self._releases.get(technician.id, 0)
        )
        update = {"current_load": load}
        if technician.id in self._availability:
            update["availability"] = self._availability[technician.id]
        return technician.model_copy(update=update)

    async def get_technician(self, technician_id: UUID) -> Optional[Technician]:
        if technician_id in self._new_technicians:
            return self._new_technicians[technician_id].model_copy()
        with self._store._lock:
            technician = self._store._technicians.get(technician_id)
        return self._technician_view(technician) if technician else None

    async def list_technicians(self, capable_only: bool = True) -> List[Technician]:
        with self._store._lock:
            committed = list(self._store._technicians.values())
        technicians = [self._technician_view(t) for t in committed]
        technicians.extend(t.model_copy() for t in self._new_technicians.values())
        if capable_only:
            technicians = [t for t in technicians if t.can_handle_tickets]
        return technicians

    async def add_technician(self, technician: Technician) -> None:
        self._new_technicians[technician.id] = technician.model_copy()

    async def try_increment_load(self, technician_id: UUID) -> bool:
        with self._store._lock:
            technician = self._store._technicians.get(technician_id)
            if technician is None:
                return False
            taken = technician.current_load + self._store._reserved[technician_id]
            if taken >= technician.max_capacity:
                return False
            self._store._reserved[technician_id] += 1
            self._reservations[technician_id] += 1
        return True

    async def decrement_load(self, technician_id: UUID) -> None:
        technician = await self.get_technician(technician_id)
        if technician is None or technician.current_load <= 0:
            raise TransactionConflict(f"No slot to release for technician {technician_id}")
        self._releases[technician_id] += 1

    async def set_availability(self, technician_id: UUID, availability: Availability) -> None:
        self._availability[technician_id] = availability

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    async def add_history(self, entry: StatusHistoryEntry) -> None:
        self._history.append(entry)

    async def list_history(self, ticket_id: UUID) -> List[StatusHistoryEntry]:
        with self._store._lock:
            entries = [e for e in self._store._history if e.ticket_id == ticket_id]
        entries.extend(e for e in self._history if e.ticket_id == ticket_id)
        # Append order is commit order; newest first
        return list(reversed(entries))

    async def add_note(self, note: TicketNote) -> None:
        self._notes.append(note)

    async def list_notes(self, ticket_id: UUID) -> List[TicketNote]:
        with self._store._lock:
            notes = [n for n in self._store._notes if n.ticket_id == ticket_id]
        notes.extend(n for n in self._notes if n.ticket_id == ticket_id)
        return notes

    # -------------------------------------------------------------------------
    # Performance metrics
    # -------------------------------------------------------------------------

    async def get_metrics(self, technician_id: UUID, for_update: bool = False) -> Optional[PerformanceMetrics]:
        if technician_id in self._metrics:
            return self._metrics[technician_id].model_copy()
        with self._store._lock:
            metrics = self._store._metrics.get(technician_id)
            if for_update:
                self._track("metrics", technician_id)
        return metrics.model_copy() if metrics else None

    async def save_metrics(self, metrics: PerformanceMetrics) -> None:
        with self._store._lock:
            self._track("metrics", metrics.technician_id)
        self._metrics[metrics.technician_id] = metrics.model_copy()

    # -------------------------------------------------------------------------
    # Transaction control
    # -------------------------------------------------------------------------

    async def commit(self) -> None:
        store = self._store
        with store._lock:
            stale = [
                key for key, version in self._read_versions.items()
                if store._versions[key] != version
            ]
            stale.extend(
                ("technician", technician_id)
                for technician_id, released in self._releases.items()
                if technician_id in store._technicians
                and store._technicians[technician_id].current_load
                + self._reservations.get(technician_id, 0) < released
            )
            if stale:
                logger.debug(f"Commit conflict on {len(stale)} row(s)")
                self._release_reservations()
                self._finished = True
                raise TransactionConflict(
                    f"Rows changed by a concurrent transaction: {stale}"
                )

            for technician_id, technician in self._new_technicians.items():
                store._technicians[technician_id] = technician

            for ticket_id, staged in self._tickets.items():
                if staged is _DELETED:
                    store._tickets.pop(ticket_id, None)
                else:
                    store._tickets[ticket_id] = staged
                store._versions[("ticket", ticket_id)] += 1

            touched = set(self._reservations) | set(self._releases) | set(self._availability)
            for technician_id in touched:
                technician = store._technicians.get(technician_id)
                if technician is None:
                    continue
                taken = self._reservations.get(technician_id, 0)
                store._reserved[technician_id] -= taken
                load = technician.current_load + taken - self._releases.get(technician_id, 0)
                update = {"current_load": load}
                if technician_id in self._availability:
                    update["availability"] = self._availability[technician_id]
                store._technicians[technician_id] = technician.model_copy(update=update)

            for technician_id, metrics in self._metrics.items():
                store._metrics[technician_id] = metrics
                store._versions[("metrics", technician_id)] += 1

            store._history.extend(self._history)
            store._notes.extend(self._notes)

        self._reservations.clear()
        self._finished = True

    async def rollback(self) -> None:
        with self._store._lock:
            self._release_reservations()
        self._finished = True

    def _release_reservations(self) -> None:
        """Caller holds the store lock."""
        for technician_id, taken in self._reservations.items():
            self._store._reserved[technician_id] -= taken
        self._reservations.clear()
