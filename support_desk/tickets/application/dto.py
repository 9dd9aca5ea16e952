"""
Ticket Application DTOs
=======================

Data Transfer Objects for the ticket API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from support_desk.config import SenderRole, TicketCategory, TicketSource, TicketStatus
from support_desk.tickets.domain import DEFAULT_SUBJECT, Ticket, TicketMessage


# ========== Request DTOs ==========

class TicketSubmitRequest(BaseModel):
    """In-app ticket submission."""
    email: str = Field(..., min_length=3, max_length=320, description="Requester email")
    subject: str = Field(default=DEFAULT_SUBJECT, max_length=500, description="Ticket subject")
    description: str = Field(..., min_length=1, description="What the requester needs help with")
    category: Optional[TicketCategory] = Field(
        None,
        description="Category; detected from the text when omitted"
    )
    user_id: Optional[str] = Field(None, description="Owning user id")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Require something shaped like an address."""
        v = v.strip()
        if "@" not in v:
            raise ValueError("email must be an email address")
        return v


class TicketReplyRequest(BaseModel):
    """Reply appended to an existing ticket."""
    body: str = Field(..., min_length=1, description="Message text")


# ========== Response DTOs ==========

class TicketMessageResponse(BaseModel):
    id: int
    ticket_id: int
    sender_role: SenderRole
    body: str
    message_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_domain(cls, message: TicketMessage) -> "TicketMessageResponse":
        return cls(
            id=message.id,
            ticket_id=message.ticket_id,
            sender_role=message.sender_role,
            body=message.body,
            message_id=message.message_id,
            metadata=message.metadata,
            created_at=message.created_at,
        )


class TicketResponse(BaseModel):
    """Response model for a ticket."""
    id: int
    email: str
    subject: str
    description: str
    category: TicketCategory
    status: TicketStatus
    priority: str
    source: TicketSource
    user_id: Optional[str] = None
    sla_due_at: datetime
    last_message_at: datetime
    last_response_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, ticket: Ticket) -> "TicketResponse":
        return cls(
            id=ticket.id,
            email=ticket.email,
            subject=ticket.subject,
            description=ticket.description,
            category=ticket.category,
            status=ticket.status,
            priority=ticket.priority,
            source=ticket.source,
            user_id=ticket.user_id,
            sla_due_at=ticket.sla_due_at,
            last_message_at=ticket.last_message_at,
            last_response_at=ticket.last_response_at,
            escalated_at=ticket.escalated_at,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
        )


class TicketDetailResponse(TicketResponse):
    """Ticket with its full message thread."""
    messages: List[TicketMessageResponse] = Field(default_factory=list)
