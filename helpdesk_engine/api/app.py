"""
Helpdesk Engine API

FastAPI application with:
- Ticket assignment, unassignment and removal
- Completion (resolve / close) and other status changes
- Status history and notes
- Technician workload, availability and load consistency

Callers are authorized upstream by the permission gate, which forwards the
actor as X-Actor-Id and X-Actor-Capabilities headers.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, Depends, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import settings
from ..engine import Engine, build_engine
from ..logging_config import setup_logging
from ..models import (
    TicketStatus,
    Availability,
    Capability,
    ActorContext,
)
from ..services.errors import (
    EngineError,
    NotFound,
    Forbidden,
    TechnicianUnavailable,
    CapacityExceeded,
    InvalidTransition,
    AlreadyClosed,
    ValidationError,
    Unavailable,
)

logger = logging.getLogger(__name__)


ERROR_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    Forbidden: status.HTTP_403_FORBIDDEN,
    TechnicianUnavailable: status.HTTP_409_CONFLICT,
    CapacityExceeded: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    AlreadyClosed: status.HTTP_409_CONFLICT,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    Unavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class AssignTicketRequest(BaseModel):
    technician_id: UUID
    reason: Optional[str] = None


class CompleteTicketRequest(BaseModel):
    status: TicketStatus
    resolution_notes: str
    time_spent_hours: Optional[float] = Field(default=None, ge=0)


class ChangeStatusRequest(BaseModel):
    status: TicketStatus
    reason: Optional[str] = None


class UnassignTicketRequest(BaseModel):
    reason: Optional[str] = None


class AvailabilityRequest(BaseModel):
    availability: Availability


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def get_actor(
    x_actor_id: UUID = Header(...),
    x_actor_capabilities: Optional[str] = Header(default=None)
) -> ActorContext:
    """Actor as resolved by the permission gate. Unknown capabilities are ignored."""
    known = {c.value for c in Capability}
    granted = set()
    for raw in (x_actor_capabilities or "").split(","):
        value = raw.strip().lower()
        if value in known:
            granted.add(Capability(value))
    return ActorContext(actor_id=x_actor_id, capabilities=frozenset(granted))


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


# =============================================================================
# APP SETUP
# =============================================================================

def create_app(engine: Optional[Engine] = None) -> FastAPI:
    engine = engine or build_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        await engine.start()
        logger.info(f"{settings.app.app_name} {settings.app.app_version} started")
        yield
        await engine.stop()

    app = FastAPI(
        title=settings.app.app_name,
        description="Ticket lifecycle and technician assignment engine",
        version=settings.app.app_version,
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(EngineError, engine_error_handler)

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "helpdesk-engine",
            "version": settings.app.app_version
        }

    # =========================================================================
    # TICKET ENDPOINTS
    # =========================================================================

    @app.post("/tickets/{ticket_id}/assign")
    async def assign_ticket(
        ticket_id: UUID,
        request: AssignTicketRequest,
        actor: ActorContext = Depends(get_actor),
        engine: Engine = Depends(get_engine)
    ):
        """
        Assign or reassign a ticket.

        The technician's free slot is taken in the same transaction; a full
        technician gets 409 and nothing changes.
        """
        ticket = await engine.assignment.assign(
            ticket_id, request.technician_id, actor, request.reason
        )
        return {"ticket": ticket}

    @app.post("/tickets/{ticket_id}/unassign")
    async def unassign_ticket(
        ticket_id: UUID,
        request: UnassignTicketRequest,
        actor: ActorContext = Depends(get_actor),
        engine: Engine = Depends(get_engine)
    ):
        ticket = await engine.assignment.unassign(ticket_id, actor, request.reason)
        return {"ticket": ticket}

    @app.post("/tickets/{ticket_id}/complete")
    async def complete_ticket(
        ticket_id: UUID,
        request: CompleteTicketRequest,
        actor: ActorContext = Depends(get_actor),
        engine: Engine = Depends(get_engine)
    ):
        """
        Resolve or close a ticket.

        Only the assignee, or an actor with override_ownership, may complete.
        """
        ticket = await engine.completion.complete(
            ticket_id,
            actor,
            request.status,
            request.resolution_notes,
            request.time_spent_hours,
        )
        return {"ticket": ticket}

    @app.post("/tickets/{ticket_id}/status")
    async def change_status(
        ticket_id: UUID,
        request: ChangeStatusRequest,
        actor: ActorContext = Depends(get_actor),
        engine: Engine = Depends(get_engine)
    ):
        ticket = await engine.status.change_status(
            ticket_id, actor, request.status, request.reason
        )
        return {"ticket": ticket}

    @app.delete("/tickets/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def remove_ticket(
        ticket_id: UUID,
        reason: Optional[str] = None,
        actor: ActorContext = Depends(get_actor),
        engine: Engine = Depends(get_engine)
    ):
        await engine.assignment.remove(ticket_id, actor, reason)

    @app.get("/tickets/{ticket_id}/status-history")
    async def get_status_history(
        ticket_id: UUID,
        engine: Engine = Depends(get_engine)
    ):
        """Status history, newest first."""
        history = await engine.history.for_ticket(ticket_id)
        return {"ticket_id": ticket_id, "history": history}

    @app.get("/tickets/{ticket_id}/notes")
    async def get_notes(
        ticket_id: UUID,
        include_internal: bool = True,
        engine: Engine = Depends(get_engine)
    ):
        notes = await engine.history.notes_for_ticket(ticket_id, include_internal)
        return {"ticket_id": ticket_id, "notes": notes}

    # =========================================================================
    # TECHNICIAN ENDPOINTS
    # =========================================================================

    @app.get("/technicians/workload")
    async def get_workload(engine: Engine = Depends(get_engine)):
        """
        Per-technician workload plus the unassigned queue.

        Queue order: priority descending, then oldest first.
        """
        return await engine.workload.snapshot()

    @app.put("/technicians/{technician_id}/availability")
    async def set_availability(
        technician_id: UUID,
        request: AvailabilityRequest,
        engine: Engine = Depends(get_engine)
    ):
        technician = await engine.capacity.set_availability(technician_id, request.availability)
        return {"technician": technician}

    @app.get("/technicians/consistency")
    async def check_consistency(engine: Engine = Depends(get_engine)):
        mismatches = await engine.capacity.audit()
        return {"consistent": not mismatches, "mismatches": mismatches}

    return app


app = create_app()


# =============================================================================
# RUN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
