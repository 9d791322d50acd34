"""
Tests for post-commit notification emission.
"""

import logging
from uuid import uuid4

import pytest

from helpdesk_engine.engine import build_engine
from helpdesk_engine.models import TicketStatus, RecipientType, NotificationType, Technician, Ticket
from helpdesk_engine.services.notifications import NotificationEmitter, NotificationTemplates

from conftest import FailingDispatcher, RecordingDispatcher, engine_settings, load_technician, load_ticket


@pytest.fixture
def failing_engine(store, clock):
    return build_engine(settings=engine_settings(), store=store, dispatcher=FailingDispatcher(), clock=clock)


class TestDeliveryFailures:

    @pytest.mark.asyncio
    async def test_failed_dispatch_keeps_assignment(self, failing_engine, store, admin, alice, open_ticket, caplog):
        with caplog.at_level(logging.ERROR, logger="helpdesk_engine.services.notifications"):
            ticket = await failing_engine.assignment.assign(open_ticket.id, alice.id, admin)
            await failing_engine.notifications.drain()

        assert ticket.assigned_to == alice.id
        assert (await load_ticket(store, open_ticket.id)).assigned_to == alice.id
        assert (await load_technician(store, alice.id)).current_load == 1

        failures = [r for r in caplog.records if "failed" in r.getMessage()]
        assert len(failures) == 2
        assert all(r.exc_info for r in failures)

    @pytest.mark.asyncio
    async def test_failed_dispatch_keeps_completion(self, failing_engine, store, admin, assigned_ticket):
        ticket = await failing_engine.completion.complete(
            assigned_ticket.id, admin, TicketStatus.RESOLVED, "Fixed"
        )
        await failing_engine.notifications.drain()

        assert ticket.status == TicketStatus.RESOLVED
        assert (await load_ticket(store, assigned_ticket.id)).status == TicketStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_emit_does_not_wait_for_delivery(self):
        dispatcher = RecordingDispatcher()
        emitter = NotificationEmitter(dispatcher)
        technician = Technician(name="Uma")
        ticket = Ticket(title="Monitor flickers", customer_id=technician.id)

        tasks = emitter.emit([NotificationTemplates.assignment_received(ticket, technician)])

        assert len(tasks) == 1
        assert dispatcher.sent == []
        await emitter.drain()
        assert len(dispatcher.sent) == 1


class TestTemplates:

    def test_completion_titles(self):
        resolved = Ticket(title="Wifi", customer_id=uuid4(), status=TicketStatus.RESOLVED)
        closed = resolved.model_copy(update={"status": TicketStatus.CLOSED})

        assert NotificationTemplates.ticket_completed(resolved).title == "Ticket Resolved"
        assert NotificationTemplates.ticket_completed(closed).title == "Ticket Closed"
        assert NotificationTemplates.ticket_completed(closed).recipient_id == resolved.customer_id

    def test_assignment_pair(self):
        technician = Technician(name="Vic")
        ticket = Ticket(title="Keyboard", customer_id=uuid4())

        to_technician = NotificationTemplates.assignment_received(ticket, technician)
        to_customer = NotificationTemplates.ticket_assigned(ticket, technician)

        assert to_technician.recipient_type == RecipientType.EMPLOYEE
        assert to_technician.notification_type == NotificationType.ASSIGNMENT
        assert to_customer.recipient_type == RecipientType.CUSTOMER
        assert "Vic" in to_customer.message
        assert to_customer.ticket_id == ticket.id
