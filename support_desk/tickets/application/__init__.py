"""
Ticket Application Layer
========================

Application layer for the support ticket module.

Contains:
- Services: lifecycle manager, automated responder, dedup ledger, inbox poller
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from support_desk.tickets.application.dto import (
    TicketDetailResponse,
    TicketMessageResponse,
    TicketReplyRequest,
    TicketResponse,
    TicketSubmitRequest,
)
from support_desk.tickets.application.services import (
    AutomatedResponder,
    IMailSender,
    IProcessedEmailRepository,
    ISupportStore,
    ITemplateProvider,
    OutboundEmail,
    SendResult,
    TicketLifecycleService,
    utc_now,
)
from support_desk.tickets.application.ledger import DedupLedger
from support_desk.tickets.application.inbox import (
    FetchedMessage,
    IMailbox,
    InboxConfig,
    MailSourceAdapter,
    parse_inbound_email,
)

__all__ = [
    # DTOs
    "TicketSubmitRequest",
    "TicketReplyRequest",
    "TicketResponse",
    "TicketDetailResponse",
    "TicketMessageResponse",
    # Services
    "AutomatedResponder",
    "TicketLifecycleService",
    "DedupLedger",
    "MailSourceAdapter",
    "InboxConfig",
    "FetchedMessage",
    "parse_inbound_email",
    "OutboundEmail",
    "SendResult",
    "utc_now",
    # Interfaces
    "ISupportStore",
    "IProcessedEmailRepository",
    "IMailSender",
    "ITemplateProvider",
    "IMailbox",
]
