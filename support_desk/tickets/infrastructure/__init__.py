"""
Ticket Infrastructure Layer
===========================

Concrete implementations for the support ticket module:
- SQLAlchemy models and stores (plus an in-memory store)
- Outbound mail API client, IMAP mailbox, response template file
"""

from support_desk.tickets.infrastructure.external import (
    CircuitBreaker,
    HttpMailSender,
    ImapMailbox,
    ResponseTemplateManager,
)
from support_desk.tickets.infrastructure.repositories import (
    InMemorySupportStore,
    SQLAlchemySupportStore,
)

__all__ = [
    "CircuitBreaker",
    "HttpMailSender",
    "ImapMailbox",
    "ResponseTemplateManager",
    "InMemorySupportStore",
    "SQLAlchemySupportStore",
]
