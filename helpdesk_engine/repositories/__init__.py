"""
Helpdesk Engine Repositories

Ticket store contracts and the in-memory and SQL backends.
"""

from .base import TicketStore, UnitOfWork, StoreError, TransactionConflict, StorageUnavailable
from .memory import InMemoryStore
from .sql import SqlStore

__all__ = [
    "TicketStore", "UnitOfWork",
    "StoreError", "TransactionConflict", "StorageUnavailable",
    "InMemoryStore", "SqlStore",
]
