"""
Transaction runner.

Runs one unit of work per attempt. Conflicts with concurrent
transactions are retried with linear backoff; storage failures and
exhausted retries surface as Unavailable. Engine errors raised by the
work function roll back and propagate unchanged.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ..repositories.base import TicketStore, UnitOfWork, TransactionConflict, StorageUnavailable
from .errors import Unavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionRunner:

    def __init__(self, store: TicketStore, attempts: int = 3, backoff_seconds: float = 0.05):
        self.store = store
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds

    async def run(self, work: Callable[[UnitOfWork], Awaitable[T]], label: str) -> T:
        """Execute work(uow) and commit. Returns whatever work returned."""
        for attempt in range(1, self.attempts + 1):
            try:
                async with self.store.unit_of_work() as uow:
                    result = await work(uow)
                    await uow.commit()
                    return result
            except TransactionConflict as exc:
                logger.warning(f"{label}: conflict on attempt {attempt}/{self.attempts}: {exc}")
                if attempt == self.attempts:
                    raise Unavailable(f"{label}: too much contention, retry later") from exc
                await asyncio.sleep(self.backoff_seconds * attempt)
            except StorageUnavailable as exc:
                logger.error(f"{label}: storage unavailable: {exc}")
                raise Unavailable(f"{label}: storage unavailable") from exc

    async def read(self, work: Callable[[UnitOfWork], Awaitable[T]], label: str) -> T:
        """Read-only unit of work; never commits."""
        try:
            async with self.store.unit_of_work() as uow:
                return await work(uow)
        except StorageUnavailable as exc:
            logger.error(f"{label}: storage unavailable: {exc}")
            raise Unavailable(f"{label}: storage unavailable") from exc
