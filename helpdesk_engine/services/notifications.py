"""
Helpdesk Engine Notifications

Emit-after-commit, fire-and-forget boundary to the external notification
dispatcher. Delivery failures are logged and never reach the caller; the
transaction that produced the notification is already committed.
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Set

from ..models.ticket import (
    Ticket,
    Technician,
    TicketStatus,
    NotificationRequest,
    NotificationType,
    RecipientType,
)

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    External collaborator contract.

    Accepts a request and handles delivery. The engine never waits for
    delivery confirmation.
    """

    async def dispatch(self, request: NotificationRequest) -> None:
        raise NotImplementedError


class LoggingDispatcher(NotificationDispatcher):
    """Default dispatcher: records the request in the log."""

    async def dispatch(self, request: NotificationRequest) -> None:
        logger.info(
            f"Notify {request.recipient_type.value} {request.recipient_id}: "
            f"{request.title} - {request.message}"
        )


# =============================================================================
# TEMPLATES
# =============================================================================

class NotificationTemplates:
    """Titles and messages for the lifecycle events."""

    @staticmethod
    def assignment_received(ticket: Ticket, technician: Technician) -> NotificationRequest:
        return NotificationRequest(
            recipient_id=technician.id,
            recipient_type=RecipientType.EMPLOYEE,
            notification_type=NotificationType.ASSIGNMENT,
            title="New Ticket Assignment",
            message=f'You have been assigned a new ticket "{ticket.title}".',
            ticket_id=ticket.id,
        )

    @staticmethod
    def ticket_assigned(ticket: Ticket, technician: Technician) -> NotificationRequest:
        return NotificationRequest(
            recipient_id=ticket.customer_id,
            recipient_type=RecipientType.CUSTOMER,
            notification_type=NotificationType.TICKET_UPDATE,
            title="Ticket Assigned",
            message=f'Ticket "{ticket.title}" has been assigned to {technician.name}.',
            ticket_id=ticket.id,
        )

    @staticmethod
    def status_changed(
        ticket: Ticket,
        old_status: TicketStatus,
        new_status: TicketStatus
    ) -> NotificationRequest:
        return NotificationRequest(
            recipient_id=ticket.customer_id,
            recipient_type=RecipientType.CUSTOMER,
            notification_type=NotificationType.TICKET_UPDATE,
            title="Ticket Status Updated",
            message=(
                f'Ticket "{ticket.title}" status changed from '
                f"{old_status.value} to {new_status.value}."
            ),
            ticket_id=ticket.id,
        )

    @staticmethod
    def ticket_completed(ticket: Ticket) -> NotificationRequest:
        if ticket.status == TicketStatus.RESOLVED:
            title = "Ticket Resolved"
            message = (
                f'Your ticket "{ticket.title}" has been resolved. '
                "Please provide feedback on the service."
            )
        else:
            title = "Ticket Closed"
            message = f'Your ticket "{ticket.title}" has been closed.'
        return NotificationRequest(
            recipient_id=ticket.customer_id,
            recipient_type=RecipientType.CUSTOMER,
            notification_type=NotificationType.TICKET_UPDATE,
            title=title,
            message=message,
            ticket_id=ticket.id,
        )


# =============================================================================
# EMITTER
# =============================================================================

class NotificationEmitter:
    """
    Schedules dispatches on the running loop and returns immediately.

    At-most-once: a failed dispatch is logged, not retried.
    """

    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None):
        self.dispatcher = dispatcher or LoggingDispatcher()
        self._pending: Set[asyncio.Task] = set()

    def emit(self, requests: Iterable[NotificationRequest]) -> List[asyncio.Task]:
        tasks = []
        loop = asyncio.get_running_loop()
        for request in requests:
            task = loop.create_task(self._deliver(request))
            # Hold a reference until done so the task is not collected
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            tasks.append(task)
        return tasks

    async def _deliver(self, request: NotificationRequest) -> None:
        try:
            await self.dispatcher.dispatch(request)
        except Exception:
            logger.exception(
                f"Notification to {request.recipient_type.value} "
                f"{request.recipient_id} failed: {request.title}"
            )

    async def drain(self) -> None:
        """Wait for in-flight dispatches. Used on shutdown and in tests."""
        current_loop = asyncio.get_running_loop()
        pending = [t for t in list(self._pending) if t.get_loop() is current_loop]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
