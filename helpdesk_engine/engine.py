"""
Helpdesk Engine assembly.

Builds the store and every service around one TransactionRunner and one
NotificationEmitter, from settings or from explicit overrides.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .config import Settings, StoreSettings, settings as default_settings
from .models.ticket import utcnow
from .repositories.base import TicketStore
from .repositories.memory import InMemoryStore
from .repositories.sql import SqlStore
from .services.assignment import AssignmentCoordinator
from .services.capacity import CapacityTracker
from .services.completion import CompletionHandler
from .services.history import HistoryService
from .services.notifications import NotificationDispatcher, NotificationEmitter
from .services.status import StatusService
from .services.transactions import TransactionRunner
from .services.workload import WorkloadAggregator

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    store: TicketStore
    transactions: TransactionRunner
    notifications: NotificationEmitter
    capacity: CapacityTracker
    assignment: AssignmentCoordinator
    completion: CompletionHandler
    status: StatusService
    workload: WorkloadAggregator
    history: HistoryService

    async def start(self) -> None:
        await self.store.initialize()

    async def stop(self) -> None:
        await self.notifications.drain()
        await self.store.close()


def create_store(store_settings: StoreSettings) -> TicketStore:
    backend = store_settings.backend.lower()
    if backend == "memory":
        return InMemoryStore()
    if backend == "sql":
        return SqlStore(
            store_settings.database_url,
            echo=store_settings.database_echo,
            pool_timeout=store_settings.database_pool_timeout,
        )
    raise ValueError(f"Unknown store backend: {store_settings.backend}")


def build_engine(
    settings: Optional[Settings] = None,
    store: Optional[TicketStore] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    clock: Callable = utcnow
) -> Engine:
    settings = settings or default_settings
    store = store or create_store(settings.store)

    transactions = TransactionRunner(
        store,
        attempts=settings.engine.transaction_attempts,
        backoff_seconds=settings.engine.retry_backoff,
    )
    notifications = NotificationEmitter(dispatcher)
    capacity = CapacityTracker(transactions)

    logger.info(
        f"Engine built on {type(store).__name__} "
        f"(attempts={transactions.attempts}, "
        f"resolution baseline={settings.engine.resolution_baseline})"
    )

    return Engine(
        store=store,
        transactions=transactions,
        notifications=notifications,
        capacity=capacity,
        assignment=AssignmentCoordinator(transactions, capacity, notifications, clock),
        completion=CompletionHandler(
            transactions,
            capacity,
            notifications,
            clock,
            resolution_baseline=settings.engine.resolution_baseline,
        ),
        status=StatusService(transactions, capacity, notifications, clock),
        workload=WorkloadAggregator(transactions, clock),
        history=HistoryService(transactions),
    )
