"""
Ticket Infrastructure Repositories
==================================

Concrete implementations of the support store interfaces.

- ``SQLAlchemySupportStore``: async SQLAlchemy, one short transaction per call
- ``InMemorySupportStore``: process-local dictionaries for development and tests

Both implement the same query predicate and the same conditional
escalation claim, so services behave identically on either.
"""

import dataclasses
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncGenerator, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from support_desk.config import SenderRole, TicketCategory, TicketSource, TicketStatus
from support_desk.core import RepositoryException, ValidationException
from support_desk.shared.infrastructure.logging import get_logger
from support_desk.tickets.application.services import (
    IProcessedEmailRepository,
    ISupportStore,
    utc_now,
)
from support_desk.tickets.domain import (
    PROTECTED_TICKET_FIELDS,
    ProcessedEmail,
    Ticket,
    TicketMessage,
    TicketQuery,
)
from support_desk.tickets.infrastructure.models import (
    ProcessedEmailModel,
    SupportTicketMessageModel,
    SupportTicketModel,
)

logger = get_logger(__name__)

_TICKET_FIELDS = frozenset(f.name for f in dataclasses.fields(Ticket))


def _check_changes(changes: Dict[str, Any]) -> None:
    protected = PROTECTED_TICKET_FIELDS.intersection(changes)
    if protected:
        raise ValidationException(
            "Cannot update protected ticket fields",
            {"fields": sorted(protected)}
        )
    unknown = set(changes) - _TICKET_FIELDS
    if unknown:
        raise ValidationException("Unknown ticket fields", {"fields": sorted(unknown)})


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Backends without timezone support hand back naive UTC datetimes."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# ========== SQLAlchemy ==========

class SQLAlchemySupportStore(ISupportStore, IProcessedEmailRepository):
    """
    SQLAlchemy implementation of the support store and dedup repository.

    Every call runs in its own transaction; driver errors surface as
    RepositoryException.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error(
                "Support store operation failed",
                extra={"operation": operation, "error": str(e)}
            )
            raise RepositoryException(f"Failed to {operation}", {"error": str(e)}) from e

    # ---------- mapping ----------

    @staticmethod
    def _to_ticket(model: SupportTicketModel) -> Ticket:
        return Ticket(
            id=model.id,
            email=model.email,
            subject=model.subject,
            description=model.description,
            category=TicketCategory(model.category),
            status=TicketStatus(model.status),
            sla_due_at=_as_utc(model.sla_due_at),
            last_message_at=_as_utc(model.last_message_at),
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
            priority=model.priority,
            source=TicketSource(model.source),
            user_id=model.user_id,
            external_message_id=model.external_message_id,
            last_response_at=_as_utc(model.last_response_at),
            escalated_at=_as_utc(model.escalated_at),
        )

    @staticmethod
    def _to_message(model: SupportTicketMessageModel) -> TicketMessage:
        return TicketMessage(
            id=model.id,
            ticket_id=model.ticket_id,
            sender_role=SenderRole(model.sender_role),
            body=model.body,
            created_at=_as_utc(model.created_at),
            message_id=model.message_id,
            metadata=dict(model.message_metadata or {}),
        )

    @staticmethod
    def _to_processed(model: ProcessedEmailModel) -> ProcessedEmail:
        return ProcessedEmail(
            message_id=model.message_id,
            ticket_id=model.ticket_id,
            sender_email=model.sender_email,
            subject=model.subject,
            received_at=_as_utc(model.received_at),
        )

    # ---------- tickets ----------

    async def insert_ticket(self, ticket: Ticket) -> Ticket:
        model = SupportTicketModel(
            user_id=ticket.user_id,
            email=ticket.email,
            subject=ticket.subject,
            description=ticket.description,
            category=ticket.category.value,
            status=ticket.status.value,
            priority=ticket.priority,
            source=ticket.source.value,
            external_message_id=ticket.external_message_id,
            sla_due_at=ticket.sla_due_at,
            last_message_at=ticket.last_message_at,
            last_response_at=ticket.last_response_at,
            escalated_at=ticket.escalated_at,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
        )
        async with self._transaction("insert ticket") as session:
            session.add(model)
            await session.flush()
            return self._to_ticket(model)

    async def get_ticket(self, ticket_id: int) -> Optional[Ticket]:
        async with self._transaction("get ticket") as session:
            model = await session.get(SupportTicketModel, ticket_id)
            return self._to_ticket(model) if model else None

    async def update_ticket(self, ticket_id: int, changes: Dict[str, Any]) -> Optional[Ticket]:
        _check_changes(changes)
        async with self._transaction("update ticket") as session:
            model = await session.get(SupportTicketModel, ticket_id)
            if model is None:
                return None
            for name, value in changes.items():
                setattr(model, name, _column_value(value))
            model.updated_at = changes.get("updated_at") or utc_now()
            await session.flush()
            return self._to_ticket(model)

    async def find_tickets(self, query: TicketQuery) -> List[Ticket]:
        stmt = select(SupportTicketModel)
        if query.status is not None:
            stmt = stmt.where(SupportTicketModel.status == query.status.value)
        if query.sla_due_before is not None:
            stmt = stmt.where(SupportTicketModel.sla_due_at <= query.sla_due_before)
        if query.unescalated_only:
            stmt = stmt.where(SupportTicketModel.escalated_at.is_(None))
        if query.email is not None:
            stmt = stmt.where(SupportTicketModel.email == query.email)

        stmt = stmt.order_by(SupportTicketModel.sla_due_at.asc(), SupportTicketModel.id.asc())
        if query.limit:
            stmt = stmt.limit(query.limit)

        async with self._transaction("find tickets") as session:
            result = await session.execute(stmt)
            return [self._to_ticket(model) for model in result.scalars().all()]

    async def claim_escalation(self, ticket_id: int, escalated_at: datetime) -> bool:
        stmt = (
            update(SupportTicketModel)
            .where(
                SupportTicketModel.id == ticket_id,
                SupportTicketModel.status == TicketStatus.OPEN.value,
                SupportTicketModel.escalated_at.is_(None),
            )
            .values(escalated_at=escalated_at, updated_at=escalated_at)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction("claim escalation") as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    # ---------- messages ----------

    async def insert_message(self, message: TicketMessage) -> TicketMessage:
        model = SupportTicketMessageModel(
            ticket_id=message.ticket_id,
            sender_role=message.sender_role.value,
            body=message.body,
            message_id=message.message_id,
            message_metadata=dict(message.metadata),
            created_at=message.created_at,
        )
        async with self._transaction("insert message") as session:
            session.add(model)
            await session.flush()
            return self._to_message(model)

    async def list_messages(self, ticket_id: int) -> List[TicketMessage]:
        stmt = (
            select(SupportTicketMessageModel)
            .where(SupportTicketMessageModel.ticket_id == ticket_id)
            .order_by(SupportTicketMessageModel.created_at.asc(), SupportTicketMessageModel.id.asc())
        )
        async with self._transaction("list messages") as session:
            result = await session.execute(stmt)
            return [self._to_message(model) for model in result.scalars().all()]

    # ---------- dedup ledger ----------

    async def get_processed_email(self, message_id: str) -> Optional[ProcessedEmail]:
        stmt = select(ProcessedEmailModel).where(ProcessedEmailModel.message_id == message_id)
        async with self._transaction("get processed email") as session:
            model = (await session.execute(stmt)).scalar_one_or_none()
            return self._to_processed(model) if model else None

    async def insert_processed_email(self, entry: ProcessedEmail) -> ProcessedEmail:
        existing = await self.get_processed_email(entry.message_id)
        if existing is not None:
            return existing

        model = ProcessedEmailModel(
            message_id=entry.message_id,
            ticket_id=entry.ticket_id,
            sender_email=entry.sender_email,
            subject=entry.subject or "",
            received_at=entry.received_at,
        )
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    session.add(model)
            return entry
        except IntegrityError:
            # Another worker recorded the same message id first
            existing = await self.get_processed_email(entry.message_id)
            if existing is None:
                raise RepositoryException(
                    "Failed to record processed email",
                    {"message_id": entry.message_id}
                )
            return existing
        except SQLAlchemyError as e:
            raise RepositoryException(
                "Failed to record processed email",
                {"message_id": entry.message_id, "error": str(e)}
            ) from e


# ========== In-memory ==========

class InMemorySupportStore(ISupportStore, IProcessedEmailRepository):
    """
    Dictionary-backed store.

    Ids are assigned sequentially from 1. Callers always receive copies, so
    mutating a returned entity never changes stored state.
    """

    def __init__(self):
        self._tickets: Dict[int, Ticket] = {}
        self._messages: List[TicketMessage] = []
        self._processed: Dict[str, ProcessedEmail] = {}
        self._next_ticket_id = 1
        self._next_message_id = 1

    @staticmethod
    def _copy_message(message: TicketMessage) -> TicketMessage:
        return dataclasses.replace(message, metadata=dict(message.metadata))

    async def insert_ticket(self, ticket: Ticket) -> Ticket:
        stored = dataclasses.replace(ticket, id=self._next_ticket_id)
        self._next_ticket_id += 1
        self._tickets[stored.id] = stored
        return dataclasses.replace(stored)

    async def get_ticket(self, ticket_id: int) -> Optional[Ticket]:
        ticket = self._tickets.get(ticket_id)
        return dataclasses.replace(ticket) if ticket else None

    async def update_ticket(self, ticket_id: int, changes: Dict[str, Any]) -> Optional[Ticket]:
        _check_changes(changes)
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            return None
        values = dict(changes)
        values.setdefault("updated_at", utc_now())
        updated = dataclasses.replace(ticket, **values)
        self._tickets[ticket_id] = updated
        return dataclasses.replace(updated)

    async def find_tickets(self, query: TicketQuery) -> List[Ticket]:
        matches = sorted(
            (t for t in self._tickets.values() if query.matches(t)),
            key=lambda t: (t.sla_due_at, t.id),
        )
        if query.limit:
            matches = matches[:query.limit]
        return [dataclasses.replace(t) for t in matches]

    async def claim_escalation(self, ticket_id: int, escalated_at: datetime) -> bool:
        ticket = self._tickets.get(ticket_id)
        if ticket is None or not ticket.can_escalate:
            return False
        self._tickets[ticket_id] = dataclasses.replace(
            ticket, escalated_at=escalated_at, updated_at=escalated_at
        )
        return True

    async def insert_message(self, message: TicketMessage) -> TicketMessage:
        if message.ticket_id not in self._tickets:
            raise RepositoryException(
                "Cannot add message to unknown ticket",
                {"ticket_id": message.ticket_id}
            )
        stored = dataclasses.replace(
            message, id=self._next_message_id, metadata=dict(message.metadata)
        )
        self._next_message_id += 1
        self._messages.append(stored)
        return self._copy_message(stored)

    async def list_messages(self, ticket_id: int) -> List[TicketMessage]:
        return [self._copy_message(m) for m in self._messages if m.ticket_id == ticket_id]

    async def get_processed_email(self, message_id: str) -> Optional[ProcessedEmail]:
        entry = self._processed.get(message_id)
        return dataclasses.replace(entry) if entry else None

    async def insert_processed_email(self, entry: ProcessedEmail) -> ProcessedEmail:
        existing = self._processed.setdefault(entry.message_id, dataclasses.replace(entry))
        return dataclasses.replace(existing)
