"""
SQLAlchemy ticket store.

Runs on the asyncio extension, so any async driver works
(aiosqlite locally, asyncpg in production).

The capacity check is a single conditional UPDATE whose affected row
count decides success. Releasing a slot is the mirror image and refuses
to go below zero.

Ticket rows carry a version. Writes are conditional on the version this
unit of work read, and losing that race raises TransactionConflict so
the runner retries on fresh data. Ticket and metrics rows are also read
FOR UPDATE where the dialect has row locks. SQLite has none, so its
transactions begin IMMEDIATE and take the database write lock up front.
"""

import asyncio
import functools
import logging
from datetime import datetime
from typing import Dict, List, Optional, Iterable
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
    delete,
    event,
    func,
    select,
    update,
)
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..models.ticket import (
    Ticket,
    Technician,
    TicketStatus,
    Priority,
    Availability,
    HistoryAction,
    StatusHistoryEntry,
    TicketNote,
    PerformanceMetrics,
    ACTIVE_STATUSES,
)
from .base import TicketStore, UnitOfWork, TransactionConflict, StorageUnavailable

logger = logging.getLogger(__name__)

# SQLSTATE codes for serialization failure and deadlock
_RETRYABLE_SQLSTATES = {"40001", "40P01"}
_SQLITE_BUSY = {"SQLITE_BUSY", "SQLITE_LOCKED"}


class Base(DeclarativeBase):
    pass


# =============================================================================
# TABLES
# =============================================================================

class TechnicianRow(Base):
    __tablename__ = "technicians"
    __table_args__ = (
        CheckConstraint("current_load >= 0", name="ck_technicians_load_non_negative"),
        CheckConstraint("current_load <= max_capacity", name="ck_technicians_load_within_capacity"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    can_handle_tickets: Mapped[bool] = mapped_column(Boolean, default=True)
    availability: Mapped[Availability] = mapped_column(SQLEnum(Availability), default=Availability.AVAILABLE)
    max_capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    current_load: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class TicketRow(Base):
    __tablename__ = "tickets"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    status: Mapped[TicketStatus] = mapped_column(SQLEnum(TicketStatus), nullable=False, index=True)
    priority: Mapped[Priority] = mapped_column(SQLEnum(Priority), nullable=False)
    assigned_to: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("technicians.id"), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reopened_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolution_time_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    time_spent_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class StatusHistoryRow(Base):
    """Append-only. seq gives a stable newest-first order."""
    __tablename__ = "ticket_status_history"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[UUID] = mapped_column(Uuid, unique=True, nullable=False)
    # No FK: history outlives removed tickets
    ticket_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    action: Mapped[HistoryAction] = mapped_column(SQLEnum(HistoryAction), nullable=False)
    from_status: Mapped[Optional[TicketStatus]] = mapped_column(SQLEnum(TicketStatus), nullable=True)
    to_status: Mapped[TicketStatus] = mapped_column(SQLEnum(TicketStatus), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class TicketNoteRow(Base):
    __tablename__ = "ticket_notes"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[UUID] = mapped_column(Uuid, unique=True, nullable=False)
    ticket_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    author_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    internal: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class PerformanceMetricsRow(Base):
    __tablename__ = "technician_performance_metrics"

    technician_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("technicians.id"), primary_key=True)
    total_resolved: Mapped[int] = mapped_column(Integer, default=0)
    average_resolution_hours: Mapped[float] = mapped_column(Float, default=0.0)
    average_rating: Mapped[float] = mapped_column(Float, default=0.0)
    resolved_this_month: Mapped[int] = mapped_column(Integer, default=0)
    last_updated: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


# =============================================================================
# ERROR TRANSLATION
# =============================================================================

def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _is_retryable(exc: DBAPIError) -> bool:
    if _sqlstate(exc) in _RETRYABLE_SQLSTATES:
        return True
    # SQLite reports lock contention without a SQLSTATE
    if getattr(exc.orig, "sqlite_errorname", None) in _SQLITE_BUSY:
        return True
    return "database is locked" in str(exc.orig)


def _storage_errors(method):
    """Map driver errors onto the store's exception types."""

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except DBAPIError as exc:
            if _is_retryable(exc):
                raise TransactionConflict(str(exc.orig)) from exc
            logger.error(f"Database error in {method.__name__}: {exc}")
            raise StorageUnavailable(str(exc.orig)) from exc
        except asyncio.TimeoutError as exc:
            raise StorageUnavailable(f"Timed out in {method.__name__}") from exc

    return wrapper


# =============================================================================
# UNIT OF WORK
# =============================================================================

class SqlUnitOfWork(UnitOfWork):
    """One AsyncSession, one database transaction."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory
        self._session: Optional[AsyncSession] = None
        self._finished = False
        # Ticket versions as first read by this unit of work
        self._ticket_versions: Dict[UUID, int] = {}

    async def __aenter__(self) -> "SqlUnitOfWork":
        self._session = self._session_factory()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            await self._session.close()

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError("SqlUnitOfWork used outside 'async with'")
        return self._session

    # -------------------------------------------------------------------------
    # Tickets
    # -------------------------------------------------------------------------

    @_storage_errors
    async def get_ticket(self, ticket_id: UUID, for_update: bool = False) -> Optional[Ticket]:
        stmt = (
            select(TicketRow)
            .where(TicketRow.id == ticket_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        self._ticket_versions.setdefault(row.id, row.version)
        return Ticket.model_validate(row)

    @_storage_errors
    async def list_tickets(
        self,
        statuses: Optional[Iterable[TicketStatus]] = None,
        assigned_to: Optional[UUID] = None,
        unassigned_only: bool = False
    ) -> List[Ticket]:
        stmt = select(TicketRow).execution_options(populate_existing=True)
        if statuses is not None:
            stmt = stmt.where(TicketRow.status.in_(list(statuses)))
        if assigned_to is not None:
            stmt = stmt.where(TicketRow.assigned_to == assigned_to)
        if unassigned_only:
            stmt = stmt.where(TicketRow.assigned_to.is_(None))
        rows = (await self.session.execute(stmt)).scalars().all()
        for row in rows:
            self._ticket_versions.setdefault(row.id, row.version)
        return [Ticket.model_validate(row) for row in rows]

    @_storage_errors
    async def count_active_tickets(
        self,
        technician_id: UUID,
        exclude_ticket_id: Optional[UUID] = None
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(TicketRow)
            .where(
                TicketRow.assigned_to == technician_id,
                TicketRow.status.in_(list(ACTIVE_STATUSES)),
            )
        )
        if exclude_ticket_id is not None:
            stmt = stmt.where(TicketRow.id != exclude_ticket_id)
        return (await self.session.execute(stmt)).scalar_one()

    @_storage_errors
    async def add_ticket(self, ticket: Ticket) -> None:
        self.session.add(TicketRow(**ticket.model_dump()))
        await self.session.flush()

    def _versioned(self, stmt, ticket_id: UUID):
        stmt = stmt.where(TicketRow.id == ticket_id)
        read_version = self._ticket_versions.get(ticket_id)
        if read_version is not None:
            stmt = stmt.where(TicketRow.version == read_version)
        return stmt.execution_options(synchronize_session=False)

    @_storage_errors
    async def save_ticket(self, ticket: Ticket) -> None:
        stmt = self._versioned(update(TicketRow), ticket.id).values(
            **ticket.model_dump(exclude={"id"}),
            version=TicketRow.version + 1,
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise TransactionConflict(f"Ticket {ticket.id} changed by a concurrent transaction")
        if ticket.id in self._ticket_versions:
            self._ticket_versions[ticket.id] += 1

    @_storage_errors
    async def delete_ticket(self, ticket_id: UUID) -> None:
        result = await self.session.execute(self._versioned(delete(TicketRow), ticket_id))
        if result.rowcount != 1:
            raise TransactionConflict(f"Ticket {ticket_id} changed by a concurrent transaction")
        self._ticket_versions.pop(ticket_id, None)

    # -------------------------------------------------------------------------
    # Technicians
    # -------------------------------------------------------------------------

    @_storage_errors
    async def get_technician(self, technician_id: UUID) -> Optional[Technician]:
        stmt = (
            select(TechnicianRow)
            .where(TechnicianRow.id == technician_id)
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return Technician.model_validate(row) if row else None

    @_storage_errors
    async def list_technicians(self, capable_only: bool = True) -> List[Technician]:
        stmt = select(TechnicianRow).execution_options(populate_existing=True)
        if capable_only:
            stmt = stmt.where(TechnicianRow.can_handle_tickets.is_(True))
        rows = (await self.session.execute(stmt)).scalars().all()
        return [Technician.model_validate(row) for row in rows]

    @_storage_errors
    async def add_technician(self, technician: Technician) -> None:
        self.session.add(TechnicianRow(**technician.model_dump()))
        await self.session.flush()

    @_storage_errors
    async def try_increment_load(self, technician_id: UUID) -> bool:
        result = await self.session.execute(
            update(TechnicianRow)
            .where(
                TechnicianRow.id == technician_id,
                TechnicianRow.current_load < TechnicianRow.max_capacity,
            )
            .values(current_load=TechnicianRow.current_load + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @_storage_errors
    async def decrement_load(self, technician_id: UUID) -> None:
        result = await self.session.execute(
            update(TechnicianRow)
            .where(TechnicianRow.id == technician_id, TechnicianRow.current_load > 0)
            .values(current_load=TechnicianRow.current_load - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise TransactionConflict(f"No slot to release for technician {technician_id}")

    @_storage_errors
    async def set_availability(self, technician_id: UUID, availability: Availability) -> None:
        await self.session.execute(
            update(TechnicianRow)
            .where(TechnicianRow.id == technician_id)
            .values(availability=availability)
            .execution_options(synchronize_session=False)
        )

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    @_storage_errors
    async def add_history(self, entry: StatusHistoryEntry) -> None:
        self.session.add(StatusHistoryRow(**entry.model_dump()))
        await self.session.flush()

    @_storage_errors
    async def list_history(self, ticket_id: UUID) -> List[StatusHistoryEntry]:
        stmt = (
            select(StatusHistoryRow)
            .where(StatusHistoryRow.ticket_id == ticket_id)
            .order_by(StatusHistoryRow.seq.desc())
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [StatusHistoryEntry.model_validate(row) for row in rows]

    @_storage_errors
    async def add_note(self, note: TicketNote) -> None:
        self.session.add(TicketNoteRow(**note.model_dump()))
        await self.session.flush()

    @_storage_errors
    async def list_notes(self, ticket_id: UUID) -> List[TicketNote]:
        stmt = (
            select(TicketNoteRow)
            .where(TicketNoteRow.ticket_id == ticket_id)
            .order_by(TicketNoteRow.seq)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [TicketNote.model_validate(row) for row in rows]

    # -------------------------------------------------------------------------
    # Performance metrics
    # -------------------------------------------------------------------------

    @_storage_errors
    async def get_metrics(self, technician_id: UUID, for_update: bool = False) -> Optional[PerformanceMetrics]:
        stmt = (
            select(PerformanceMetricsRow)
            .where(PerformanceMetricsRow.technician_id == technician_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return PerformanceMetrics.model_validate(row) if row else None

    @_storage_errors
    async def save_metrics(self, metrics: PerformanceMetrics) -> None:
        await self.session.merge(PerformanceMetricsRow(**metrics.model_dump()))
        await self.session.flush()

    # -------------------------------------------------------------------------
    # Transaction control
    # -------------------------------------------------------------------------

    @_storage_errors
    async def commit(self) -> None:
        try:
            await self.session.commit()
        finally:
            self._finished = True

    async def rollback(self) -> None:
        try:
            await self.session.rollback()
        finally:
            self._finished = True


def _begin_immediate(engine) -> None:
    """Take the SQLite write lock when a transaction starts, not at its first write."""

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlStore(TicketStore):
    """Database connection and unit-of-work factory."""

    def __init__(self, database_url: str, echo: bool = False, pool_timeout: float = 30):
        if database_url.startswith("sqlite"):
            # SQLite: driver-level busy timeout, default pool
            self.engine = create_async_engine(
                database_url,
                echo=echo,
                connect_args={"timeout": pool_timeout},
            )
            _begin_immediate(self.engine)
        else:
            self.engine = create_async_engine(
                database_url,
                echo=echo,
                pool_timeout=pool_timeout,
                pool_pre_ping=True,
            )
        self._session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    def unit_of_work(self) -> SqlUnitOfWork:
        return SqlUnitOfWork(self._session_factory)

    async def initialize(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Ticket store schema ready")

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("Ticket store connections closed")
