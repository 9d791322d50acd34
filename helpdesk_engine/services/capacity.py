"""
Helpdesk Engine Capacity Tracker

Technician slot accounting on top of the store's two load primitives.

Invariant: current_load == number of tickets assigned to the technician
whose status is OPEN, IN_PROGRESS or PENDING. Only the assignment,
completion and status services take or release slots, always inside the
same unit of work as the ticket change that justifies it.
"""

import logging
from typing import List
from uuid import UUID

from pydantic import BaseModel

from ..models.ticket import Technician, Availability
from ..repositories.base import UnitOfWork
from .errors import NotFound, TechnicianUnavailable, CapacityExceeded
from .transactions import TransactionRunner

logger = logging.getLogger(__name__)


class LoadMismatch(BaseModel):
    """Technician whose stored load disagrees with their active tickets."""
    technician_id: UUID
    name: str
    current_load: int
    active_tickets: int


class CapacityTracker:

    def __init__(self, transactions: TransactionRunner):
        self.transactions = transactions

    # =========================================================================
    # Slot primitives (called inside a caller's unit of work)
    # =========================================================================

    async def load_assignable(self, uow: UnitOfWork, technician_id: UUID) -> Technician:
        """Fetch a technician and check they may receive tickets at all."""
        technician = await uow.get_technician(technician_id)
        if technician is None:
            raise NotFound(f"Technician {technician_id} not found")

        if not technician.can_handle_tickets:
            raise TechnicianUnavailable(f"{technician.name} cannot handle tickets")

        if technician.availability == Availability.OFFLINE:
            raise TechnicianUnavailable(f"{technician.name} is currently offline")

        return technician

    async def take_slot(self, uow: UnitOfWork, technician: Technician) -> None:
        """
        Conditional increment. The check and the increment are one store
        operation, so two requests racing for the last slot cannot both win.
        """
        if not await uow.try_increment_load(technician.id):
            raise CapacityExceeded(
                f"{technician.name} has reached maximum concurrent tickets "
                f"({technician.max_capacity})"
            )

    async def release_slot(self, uow: UnitOfWork, technician_id: UUID) -> None:
        await uow.decrement_load(technician_id)

    # =========================================================================
    # Standalone operations
    # =========================================================================

    async def set_availability(
        self,
        technician_id: UUID,
        availability: Availability
    ) -> Technician:
        """Technician self-service state (available / busy / offline)."""

        async def work(uow: UnitOfWork) -> Technician:
            technician = await uow.get_technician(technician_id)
            if technician is None:
                raise NotFound(f"Technician {technician_id} not found")
            await uow.set_availability(technician_id, availability)
            return technician.model_copy(update={"availability": availability})

        technician = await self.transactions.run(work, f"set_availability {technician_id}")
        logger.info(f"Technician {technician.name} is now {availability.value}")
        return technician

    async def audit(self) -> List[LoadMismatch]:
        """
        Read-only consistency check of the load invariant.

        Returns an empty list when every counter matches.
        """

        async def work(uow: UnitOfWork) -> List[LoadMismatch]:
            technicians = await uow.list_technicians(capable_only=False)
            mismatches = []
            for technician in technicians:
                active = await uow.count_active_tickets(technician.id)
                if active != technician.current_load:
                    mismatches.append(LoadMismatch(
                        technician_id=technician.id,
                        name=technician.name,
                        current_load=technician.current_load,
                        active_tickets=active,
                    ))
            return mismatches

        mismatches = await self.transactions.read(work, "capacity audit")
        for m in mismatches:
            logger.warning(
                f"Load mismatch for {m.name}: counter={m.current_load} "
                f"active={m.active_tickets}"
            )
        return mismatches
