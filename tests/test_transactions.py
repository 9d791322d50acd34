"""
Tests for TransactionRunner retry and failure mapping.
"""

import pytest

from helpdesk_engine.models import TicketStatus
from helpdesk_engine.repositories.base import TransactionConflict
from helpdesk_engine.repositories.memory import InMemoryStore, InMemoryUnitOfWork
from helpdesk_engine.services.errors import Unavailable, NotFound
from helpdesk_engine.services.transactions import TransactionRunner

from conftest import load_technician, make_technician, make_ticket


class ConflictingUnitOfWork(InMemoryUnitOfWork):

    async def commit(self) -> None:
        if self._store.conflicts_left > 0:
            self._store.conflicts_left -= 1
            await self.rollback()
            raise TransactionConflict("simulated serialization failure")
        await super().commit()


class ConflictingStore(InMemoryStore):
    """Fails the first N commits with a conflict."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts_left = conflicts
        self.attempts = 0

    def unit_of_work(self):
        self.attempts += 1
        return ConflictingUnitOfWork(self)


def take_one_slot(technician_id):
    async def work(uow):
        return await uow.try_increment_load(technician_id)
    return work


class TestTransactionRunner:

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self):
        store = ConflictingStore(conflicts=2)
        tom = make_technician(store, "Tom")
        runner = TransactionRunner(store, attempts=3, backoff_seconds=0)

        assert await runner.run(take_one_slot(tom.id), "take slot") is True

        assert store.attempts == 3
        assert (await load_technician(store, tom.id)).current_load == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_unavailable(self):
        store = ConflictingStore(conflicts=5)
        tom = make_technician(store, "Tom")
        runner = TransactionRunner(store, attempts=2, backoff_seconds=0)

        with pytest.raises(Unavailable):
            await runner.run(take_one_slot(tom.id), "take slot")

        # Every failed attempt released its reservation
        assert (await load_technician(store, tom.id)).current_load == 0
        assert store._reserved[tom.id] == 0

    @pytest.mark.asyncio
    async def test_engine_errors_are_not_retried(self):
        store = ConflictingStore(conflicts=0)
        runner = TransactionRunner(store, attempts=3, backoff_seconds=0)

        async def work(uow):
            raise NotFound("nothing here")

        with pytest.raises(NotFound):
            await runner.run(work, "lookup")
        assert store.attempts == 1

    @pytest.mark.asyncio
    async def test_failed_work_rolls_back(self):
        store = InMemoryStore()
        tom = make_technician(store, "Tom")
        ticket = make_ticket(store)
        runner = TransactionRunner(store)

        async def work(uow):
            await uow.try_increment_load(tom.id)
            moved = (await uow.get_ticket(ticket.id, for_update=True)).model_copy(
                update={"status": TicketStatus.IN_PROGRESS, "assigned_to": tom.id}
            )
            await uow.save_ticket(moved)
            raise NotFound("technician vanished")

        with pytest.raises(NotFound):
            await runner.run(work, "half done")

        assert (await load_technician(store, tom.id)).current_load == 0
        async with store.unit_of_work() as uow:
            assert (await uow.get_ticket(ticket.id)).status == TicketStatus.OPEN
