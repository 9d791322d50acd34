"""
Helpdesk Engine Workload Aggregator

Read-only view over technicians and tickets:
- Per-technician workload percentage, free slots and active tickets
- The unassigned queue in dispatch order

Dispatch order: priority descending, then oldest first. Ties on both
fall back to ticket id so the order is total.
"""

import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional
from uuid import UUID

from ..models.ticket import (
    Ticket,
    Technician,
    TicketStatus,
    Priority,
    Availability,
    TechnicianWorkload,
    WorkloadReport,
    ACTIVE_STATUSES,
    utcnow,
)
from ..repositories.base import UnitOfWork
from .transactions import TransactionRunner

logger = logging.getLogger(__name__)


PRIORITY_RANK = {
    Priority.URGENT: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


def queue_order(tickets: List[Ticket]) -> List[Ticket]:
    """Highest priority first, oldest first within a priority."""
    return sorted(
        tickets,
        key=lambda t: (-PRIORITY_RANK[t.priority], t.created_at, str(t.id))
    )


def technician_workload(
    technician: Technician,
    active_ticket_ids: Optional[List[UUID]] = None
) -> TechnicianWorkload:
    load = technician.current_load
    capacity = technician.max_capacity
    return TechnicianWorkload(
        technician_id=technician.id,
        name=technician.name,
        availability=technician.availability,
        current_load=load,
        max_capacity=capacity,
        workload_percentage=load / capacity * 100,
        available_slots=max(0, capacity - load),
        can_take_more_tickets=(
            technician.availability != Availability.OFFLINE and load < capacity
        ),
        active_ticket_ids=active_ticket_ids or [],
    )


class WorkloadAggregator:

    def __init__(self, transactions: TransactionRunner, clock: Callable = utcnow):
        self.transactions = transactions
        self.clock = clock

    async def snapshot(self) -> WorkloadReport:
        """
        Workload of every capable technician plus the unassigned queue.

        Technicians who can take more tickets come first, least loaded
        first within each group.
        """

        async def work(uow: UnitOfWork) -> WorkloadReport:
            technicians = await uow.list_technicians(capable_only=True)

            by_technician: Dict[UUID, List[Ticket]] = defaultdict(list)
            for ticket in await uow.list_tickets(statuses=ACTIVE_STATUSES):
                if ticket.assigned_to is not None:
                    by_technician[ticket.assigned_to].append(ticket)

            rows = []
            for technician in technicians:
                active = sorted(by_technician.get(technician.id, []), key=lambda t: t.created_at)
                row = technician_workload(technician, [t.id for t in active])
                row.performance = await uow.get_metrics(technician.id)
                rows.append(row)

            rows.sort(key=lambda w: (not w.can_take_more_tickets, w.workload_percentage, w.name))

            unassigned = await uow.list_tickets(
                statuses=[s for s in TicketStatus if s not in (TicketStatus.RESOLVED, TicketStatus.CLOSED)],
                unassigned_only=True,
            )

            return WorkloadReport(
                technicians=rows,
                unassigned_queue=queue_order(unassigned),
                generated_at=self.clock(),
            )

        report = await self.transactions.read(work, "workload snapshot")
        logger.debug(
            f"Workload snapshot: {len(report.technicians)} technicians, "
            f"{len(report.unassigned_queue)} unassigned"
        )
        return report
