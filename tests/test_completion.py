"""
Tests for CompletionHandler: resolve / close, metrics and availability.
"""

from uuid import uuid4

import pytest

from helpdesk_engine.engine import build_engine
from helpdesk_engine.models import (
    TicketStatus,
    Availability,
    HistoryAction,
    PerformanceMetrics,
    RecipientType,
)
from helpdesk_engine.services.errors import (
    AlreadyClosed,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)

from conftest import (
    NOW,
    actor_for,
    engine_settings,
    load_technician,
    load_ticket,
    make_technician,
    make_ticket,
)


async def metrics_of(store, technician_id):
    async with store.unit_of_work() as uow:
        return await uow.get_metrics(technician_id)


class TestComplete:

    @pytest.mark.asyncio
    async def test_resolve_last_active_ticket(self, engine, store, clock, dispatcher):
        gina = make_technician(store, "Gina", availability=Availability.BUSY, current_load=1)
        ticket = make_ticket(store, status=TicketStatus.IN_PROGRESS, assigned_to=gina.id)
        clock.advance(3)

        resolved = await engine.completion.complete(
            ticket.id, actor_for(gina), TicketStatus.RESOLVED, "Replaced toner", time_spent_hours=0.5
        )

        assert resolved.status == TicketStatus.RESOLVED
        assert resolved.completed_at == clock.now
        assert resolved.resolution_notes == "Replaced toner"
        assert resolved.resolution_time_hours == pytest.approx(3.0)
        assert resolved.time_spent_hours == 0.5

        technician = await load_technician(store, gina.id)
        assert technician.current_load == 0
        assert technician.availability == Availability.AVAILABLE

        metrics = await metrics_of(store, gina.id)
        assert metrics.total_resolved == 1
        assert metrics.average_resolution_hours == pytest.approx(3.0)
        assert metrics.resolved_this_month == 1

        history = await engine.history.for_ticket(ticket.id)
        assert history[0].action == HistoryAction.RESOLVED
        assert history[0].reason == "Ticket resolved: Replaced toner"

        notes = await engine.history.notes_for_ticket(ticket.id, include_internal=False)
        assert [n.content for n in notes] == ["**Resolution:** Replaced toner"]

        await engine.notifications.drain()
        assert len(dispatcher.sent) == 1
        assert dispatcher.sent[0].recipient_type == RecipientType.CUSTOMER
        assert dispatcher.sent[0].title == "Ticket Resolved"

    @pytest.mark.asyncio
    async def test_other_active_tickets_keep_availability(self, engine, store):
        hank = make_technician(store, "Hank", availability=Availability.BUSY, current_load=2)
        first = make_ticket(store, status=TicketStatus.IN_PROGRESS, assigned_to=hank.id)
        make_ticket(store, "Second", status=TicketStatus.PENDING, assigned_to=hank.id)

        await engine.completion.complete(first.id, actor_for(hank), TicketStatus.RESOLVED, "Done")

        technician = await load_technician(store, hank.id)
        assert technician.current_load == 1
        assert technician.availability == Availability.BUSY

    @pytest.mark.asyncio
    async def test_running_average(self, engine, store, clock):
        ivy = make_technician(store, "Ivy", current_load=1)
        store.put_metrics(PerformanceMetrics(
            technician_id=ivy.id,
            total_resolved=2,
            average_resolution_hours=4.0,
            average_rating=4.5,
            resolved_this_month=2,
            last_updated=NOW,
        ))
        ticket = make_ticket(store, status=TicketStatus.IN_PROGRESS, assigned_to=ivy.id)
        clock.advance(7)

        await engine.completion.complete(ticket.id, actor_for(ivy), TicketStatus.RESOLVED, "Fixed")

        metrics = await metrics_of(store, ivy.id)
        assert metrics.total_resolved == 3
        assert metrics.average_resolution_hours == pytest.approx(5.0)
        assert metrics.resolved_this_month == 3
        # Ratings come from customer feedback, not from completion
        assert metrics.average_rating == pytest.approx(4.5)

    @pytest.mark.asyncio
    async def test_open_ticket_resolved_directly(self, engine, store, admin, open_ticket):
        resolved = await engine.completion.complete(
            open_ticket.id, admin, TicketStatus.RESOLVED, "Duplicate of another request"
        )
        assert resolved.status == TicketStatus.RESOLVED
        assert resolved.assigned_to is None

    @pytest.mark.asyncio
    async def test_close_resolved_ticket_keeps_metrics(self, engine, store, alice, assigned_ticket, clock):
        clock.advance(2)
        await engine.completion.complete(assigned_ticket.id, actor_for(alice), TicketStatus.RESOLVED, "Fixed")
        clock.advance(24)

        closed = await engine.completion.complete(
            assigned_ticket.id, actor_for(alice), TicketStatus.CLOSED, "Customer confirmed"
        )

        assert closed.status == TicketStatus.CLOSED
        assert closed.resolution_time_hours == pytest.approx(2.0)
        assert closed.completed_at == clock.now
        assert (await load_technician(store, alice.id)).current_load == 0

        metrics = await metrics_of(store, alice.id)
        assert metrics.total_resolved == 1

        history = await engine.history.for_ticket(assigned_ticket.id)
        assert [e.action for e in history] == [HistoryAction.CLOSED, HistoryAction.RESOLVED]

    @pytest.mark.asyncio
    async def test_already_closed(self, engine, store, alice):
        ticket = make_ticket(store, status=TicketStatus.CLOSED, assigned_to=alice.id)
        with pytest.raises(AlreadyClosed):
            await engine.completion.complete(ticket.id, actor_for(alice), TicketStatus.CLOSED, "Again")

    @pytest.mark.asyncio
    async def test_wrong_technician_forbidden(self, engine, store, alice, bob, assigned_ticket):
        with pytest.raises(Forbidden):
            await engine.completion.complete(assigned_ticket.id, actor_for(bob), TicketStatus.RESOLVED, "Mine now")

        ticket = await load_ticket(store, assigned_ticket.id)
        assert ticket.status == TicketStatus.IN_PROGRESS
        assert (await load_technician(store, alice.id)).current_load == 1

    @pytest.mark.asyncio
    async def test_admin_override(self, engine, admin, assigned_ticket):
        resolved = await engine.completion.complete(assigned_ticket.id, admin, TicketStatus.RESOLVED, "Done")
        assert resolved.status == TicketStatus.RESOLVED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("notes", ["", "   ", None])
    async def test_notes_required(self, engine, alice, assigned_ticket, notes):
        with pytest.raises(ValidationError):
            await engine.completion.complete(assigned_ticket.id, actor_for(alice), TicketStatus.RESOLVED, notes)

    @pytest.mark.asyncio
    async def test_target_must_be_terminal(self, engine, alice, assigned_ticket):
        with pytest.raises(ValidationError):
            await engine.completion.complete(assigned_ticket.id, actor_for(alice), TicketStatus.PENDING, "Notes")

    @pytest.mark.asyncio
    async def test_negative_time_spent(self, engine, alice, assigned_ticket):
        with pytest.raises(ValidationError):
            await engine.completion.complete(
                assigned_ticket.id, actor_for(alice), TicketStatus.RESOLVED, "Notes", time_spent_hours=-1
            )

    @pytest.mark.asyncio
    async def test_pending_cannot_close_directly(self, engine, store, alice):
        ticket = make_ticket(store, status=TicketStatus.PENDING, assigned_to=alice.id)
        with pytest.raises(InvalidTransition):
            await engine.completion.complete(ticket.id, actor_for(alice), TicketStatus.CLOSED, "Notes")

    @pytest.mark.asyncio
    async def test_missing_ticket(self, engine, admin):
        with pytest.raises(NotFound):
            await engine.completion.complete(uuid4(), admin, TicketStatus.RESOLVED, "Notes")


class TestResolutionBaseline:

    @pytest.mark.asyncio
    async def test_measured_from_reopen(self, store, dispatcher, clock):
        engine = build_engine(
            settings=engine_settings(resolution_baseline="reopened"),
            store=store,
            dispatcher=dispatcher,
            clock=clock,
        )
        jack = make_technician(store, "Jack")
        ticket = make_ticket(
            store,
            status=TicketStatus.RESOLVED,
            assigned_to=jack.id,
            completed_at=NOW,
            resolution_time_hours=1.0,
        )

        clock.advance(10)
        await engine.status.change_status(ticket.id, actor_for(jack), TicketStatus.IN_PROGRESS)
        clock.advance(4)
        resolved = await engine.completion.complete(ticket.id, actor_for(jack), TicketStatus.RESOLVED, "Again")

        assert resolved.resolution_time_hours == pytest.approx(4.0)

    @pytest.mark.asyncio
    async def test_measured_from_creation_by_default(self, engine, store, clock):
        kim = make_technician(store, "Kim")
        ticket = make_ticket(
            store,
            status=TicketStatus.RESOLVED,
            assigned_to=kim.id,
            completed_at=NOW,
            resolution_time_hours=1.0,
        )

        clock.advance(10)
        await engine.status.change_status(ticket.id, actor_for(kim), TicketStatus.IN_PROGRESS)
        clock.advance(4)
        resolved = await engine.completion.complete(ticket.id, actor_for(kim), TicketStatus.RESOLVED, "Again")

        assert resolved.resolution_time_hours == pytest.approx(14.0)
