"""
Shared fixtures: an in-memory store, a recording dispatcher and an engine
running on a controllable clock.
"""

from datetime import datetime, timedelta
from typing import List
from uuid import uuid4

import pytest

from helpdesk_engine.config import Settings, EngineSettings
from helpdesk_engine.engine import build_engine
from helpdesk_engine.models import (
    Ticket,
    Technician,
    TicketStatus,
    Priority,
    Capability,
    ActorContext,
    NotificationRequest,
)
from helpdesk_engine.repositories.memory import InMemoryStore
from helpdesk_engine.services.notifications import NotificationDispatcher


NOW = datetime(2024, 5, 15, 12, 0, 0)


class Clock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float) -> datetime:
        self.now = self.now + timedelta(hours=hours)
        return self.now


class RecordingDispatcher(NotificationDispatcher):

    def __init__(self):
        self.sent: List[NotificationRequest] = []

    async def dispatch(self, request: NotificationRequest) -> None:
        self.sent.append(request)


class FailingDispatcher(NotificationDispatcher):

    async def dispatch(self, request: NotificationRequest) -> None:
        raise RuntimeError("mail relay down")


def engine_settings(**overrides) -> Settings:
    values = {"transaction_attempts": 5, "retry_backoff": 0.001, "resolution_baseline": "created"}
    values.update(overrides)
    return Settings(engine=EngineSettings(**values))


def make_technician(store: InMemoryStore, name: str = "Alice", **fields) -> Technician:
    return store.put_technician(Technician(name=name, **fields))


def make_ticket(store: InMemoryStore, title: str = "Printer jam", **fields) -> Ticket:
    fields.setdefault("customer_id", uuid4())
    fields.setdefault("created_at", NOW)
    fields.setdefault("updated_at", fields["created_at"])
    return store.put_ticket(Ticket(title=title, **fields))


def actor_for(technician: Technician) -> ActorContext:
    return ActorContext(actor_id=technician.id)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def engine(store, dispatcher, clock):
    return build_engine(settings=engine_settings(), store=store, dispatcher=dispatcher, clock=clock)


@pytest.fixture
def admin():
    return ActorContext(actor_id=uuid4(), capabilities=frozenset({Capability.OVERRIDE_OWNERSHIP}))


@pytest.fixture
def alice(store):
    return make_technician(store, "Alice", max_capacity=3)


@pytest.fixture
def bob(store):
    return make_technician(store, "Bob", max_capacity=2)


@pytest.fixture
def open_ticket(store):
    return make_ticket(store, "VPN drops every hour", priority=Priority.HIGH)


@pytest.fixture
def assigned_ticket(store, alice):
    """IN_PROGRESS ticket already held by alice (load seeded to match)."""
    ticket = make_ticket(store, "Laptop will not boot", status=TicketStatus.IN_PROGRESS, assigned_to=alice.id)
    store.put_technician(alice.model_copy(update={"current_load": 1}))
    return ticket


async def load_technician(store, technician_id) -> Technician:
    async with store.unit_of_work() as uow:
        return await uow.get_technician(technician_id)


async def load_ticket(store, ticket_id) -> Ticket:
    async with store.unit_of_work() as uow:
        return await uow.get_ticket(ticket_id)
