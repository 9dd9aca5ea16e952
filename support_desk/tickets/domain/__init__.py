"""
Ticket Domain Layer
===================

Domain layer for the support ticket module.

Contains:
- Entities: Ticket, TicketMessage, ProcessedEmail, InboundEmail, TicketQuery
- Value Objects: ResponseTemplate and subject/body helpers
- Domain Services: the keyword categorizer

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from support_desk.tickets.domain.categorizer import CATEGORY_RULES, categorize
from support_desk.tickets.domain.entities import (
    InboundEmail,
    ProcessedEmail,
    Ticket,
    TicketMessage,
    TicketQuery,
)
from support_desk.tickets.domain.value_objects import (
    DEFAULT_RESPONSE_TEMPLATES,
    DEFAULT_SUBJECT,
    PROTECTED_TICKET_FIELDS,
    ResponseTemplate,
    extract_email_address,
    format_ticket_subject,
    parse_ticket_reference,
    sanitize_message_body,
)

__all__ = [
    # Entities
    "Ticket",
    "TicketMessage",
    "ProcessedEmail",
    "InboundEmail",
    "TicketQuery",
    # Value Objects & Services
    "ResponseTemplate",
    "DEFAULT_RESPONSE_TEMPLATES",
    "DEFAULT_SUBJECT",
    "PROTECTED_TICKET_FIELDS",
    "CATEGORY_RULES",
    "categorize",
    "extract_email_address",
    "format_ticket_subject",
    "parse_ticket_reference",
    "sanitize_message_body",
]
