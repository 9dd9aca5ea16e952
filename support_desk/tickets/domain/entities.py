"""
Ticket Domain Entities
======================

Pure Python domain entities for support tickets.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from support_desk.config import (
    DEFAULT_PRIORITY,
    SenderRole,
    TicketCategory,
    TicketSource,
    TicketStatus,
)


@dataclass
class Ticket:
    """
    Ticket entity representing a support request.

    ``id`` is None until a store has assigned one.
    """

    id: Optional[int]
    email: str
    subject: str
    description: str
    category: TicketCategory
    status: TicketStatus
    sla_due_at: datetime
    last_message_at: datetime
    created_at: datetime
    updated_at: datetime

    priority: str = DEFAULT_PRIORITY
    source: TicketSource = TicketSource.IN_APP
    user_id: Optional[str] = None
    external_message_id: Optional[str] = None

    # SLA tracking
    last_response_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == TicketStatus.OPEN

    @property
    def is_escalated(self) -> bool:
        return self.escalated_at is not None

    @property
    def can_escalate(self) -> bool:
        """Escalation is only valid once, from the open state."""
        return self.is_open and not self.is_escalated

    def status_after_message(self, sender_role: SenderRole) -> TicketStatus:
        """A user reply reopens a closed ticket; anything else keeps the status."""
        if sender_role == SenderRole.USER and self.status == TicketStatus.CLOSED:
            return TicketStatus.OPEN
        return self.status


@dataclass
class TicketMessage:
    """A single append-only entry in a ticket's thread."""

    id: Optional[int]
    ticket_id: int
    sender_role: SenderRole
    body: str
    created_at: datetime
    message_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProcessedEmail:
    """Dedup ledger entry: an inbound message that already produced a ticket update."""

    message_id: str
    ticket_id: int
    sender_email: str
    subject: str
    received_at: datetime


@dataclass(frozen=True)
class InboundEmail:
    """Normalized envelope of one inbound mail message."""

    message_id: str
    sender: str
    subject: str
    body: str
    received_at: datetime


@dataclass(frozen=True)
class TicketQuery:
    """
    Predicate over tickets understood by every store implementation.

    Fields left as None do not constrain the result.
    """

    status: Optional[TicketStatus] = None
    sla_due_before: Optional[datetime] = None
    unescalated_only: bool = False
    email: Optional[str] = None
    limit: Optional[int] = None

    @classmethod
    def sla_breaches(cls, now: datetime) -> "TicketQuery":
        """Open tickets due at or before ``now`` that were never escalated."""
        return cls(status=TicketStatus.OPEN, sla_due_before=now, unescalated_only=True)

    def matches(self, ticket: Ticket) -> bool:
        if self.status is not None and ticket.status != self.status:
            return False
        if self.sla_due_before is not None and ticket.sla_due_at > self.sla_due_before:
            return False
        if self.unescalated_only and ticket.escalated_at is not None:
            return False
        if self.email is not None and ticket.email != self.email:
            return False
        return True
