"""
Ticket Application Services
===========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (stores, mail sender), not concrete implementations
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

from support_desk.config import (
    MailTemplate,
    SenderRole,
    TicketCategory,
    TicketSource,
    TicketStatus,
)
from support_desk.core import (
    ResourceNotFoundException,
    TicketStateException,
    ValidationException,
)
from support_desk.shared.infrastructure.logging import get_logger
from support_desk.tickets.domain import (
    DEFAULT_RESPONSE_TEMPLATES,
    DEFAULT_SUBJECT,
    InboundEmail,
    ProcessedEmail,
    ResponseTemplate,
    Ticket,
    TicketMessage,
    TicketQuery,
    categorize,
    extract_email_address,
    format_ticket_subject,
    parse_ticket_reference,
    sanitize_message_body,
)

if TYPE_CHECKING:
    from support_desk.tickets.application.ledger import DedupLedger

logger = get_logger(__name__)

Clock = Callable[[], datetime]
EscalationNotifier = Callable[[Ticket], Awaitable[int]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ISupportStore(ABC):
    """Interface for ticket and message data access."""

    @abstractmethod
    async def insert_ticket(self, ticket: Ticket) -> Ticket:
        """Persist a new ticket and return it with its assigned id."""

    @abstractmethod
    async def get_ticket(self, ticket_id: int) -> Optional[Ticket]:
        """Get ticket by id."""

    @abstractmethod
    async def update_ticket(self, ticket_id: int, changes: Dict[str, Any]) -> Optional[Ticket]:
        """Apply field changes; returns None when the ticket does not exist."""

    @abstractmethod
    async def find_tickets(self, query: TicketQuery) -> List[Ticket]:
        """List tickets matching the query, oldest SLA deadline first."""

    @abstractmethod
    async def claim_escalation(self, ticket_id: int, escalated_at: datetime) -> bool:
        """Set escalated_at only if still open and unescalated; True if this call won."""

    @abstractmethod
    async def insert_message(self, message: TicketMessage) -> TicketMessage:
        """Append a message to a ticket thread."""

    @abstractmethod
    async def list_messages(self, ticket_id: int) -> List[TicketMessage]:
        """Messages of a ticket in creation order."""


class IProcessedEmailRepository(ABC):
    """Interface for the durable side of the dedup ledger."""

    @abstractmethod
    async def get_processed_email(self, message_id: str) -> Optional[ProcessedEmail]:
        """Get ledger entry by mail message id."""

    @abstractmethod
    async def insert_processed_email(self, entry: ProcessedEmail) -> ProcessedEmail:
        """Record an entry; recording an existing message id is a no-op."""


@dataclass(frozen=True)
class OutboundEmail:
    """Mail handed to the outbound mail collaborator."""
    to: str
    subject: str
    text: str
    template: str = "custom"
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendResult:
    """Outcome of a send; failures are reported here, never raised."""
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class IMailSender(ABC):
    """Interface for outbound mail delivery."""

    @abstractmethod
    async def send(self, email: OutboundEmail) -> SendResult:
        """Deliver one email. Must not raise on delivery failure."""


class ITemplateProvider(ABC):
    """Interface for canned response lookup."""

    @abstractmethod
    def get_template(self, category: TicketCategory) -> Optional[ResponseTemplate]:
        """Template for a category, or None when the category has no canned reply."""


# ========== Application Services ==========

class AutomatedResponder:
    """
    Sends canned replies, acknowledgements and escalation notices.

    Auto-responses are recorded on the ticket before delivery is attempted;
    a failed send is logged and the recorded message stays.
    """

    def __init__(
        self,
        store: ISupportStore,
        mail_sender: IMailSender,
        templates: Optional[ITemplateProvider] = None,
        subject_tag: str = "Support",
        sla_minutes: int = 120,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._mail_sender = mail_sender
        self._templates = templates
        self._subject_tag = subject_tag
        self._sla_minutes = sla_minutes
        self._clock = clock

    def _lookup(self, category: TicketCategory) -> Optional[ResponseTemplate]:
        if self._templates is None:
            return DEFAULT_RESPONSE_TEMPLATES.get(category)
        return self._templates.get_template(category)

    @property
    def sla_hours(self) -> str:
        return f"{self._sla_minutes / 60:g}"

    async def respond(self, ticket: Ticket, category: TicketCategory) -> Optional[SendResult]:
        """
        Record and send the canned response for a category.

        Returns:
            SendResult, or None when the category has no template
        """
        template = self._lookup(category)
        if template is None:
            return None

        text = template.render(ticket.id)
        now = self._clock()

        await self._store.insert_message(TicketMessage(
            id=None,
            ticket_id=ticket.id,
            sender_role=SenderRole.AGENT,
            body=text,
            created_at=now,
            metadata={"automated": True, "category": category.value},
        ))
        await self._store.update_ticket(ticket.id, {"last_response_at": now})

        result = await self._mail_sender.send(OutboundEmail(
            to=ticket.email,
            subject=format_ticket_subject(ticket.id, template.subject, self._subject_tag),
            text=text,
            template=MailTemplate.AUTO_RESPONSE,
            metadata={"ticket_id": ticket.id, "category": category.value},
        ))

        if not result.ok:
            logger.warning(
                "Automated response recorded but not delivered",
                extra={"ticket_id": ticket.id, "category": category.value, "error": result.error}
            )
        return result

    async def acknowledge(self, ticket: Ticket, summary: Optional[str] = None) -> SendResult:
        """Tell the requester a brand-new ticket was opened."""
        text = (
            "Hi there,\n\n"
            f"We've received your message and opened Ticket #{ticket.id}. "
            f"Our target is to respond within {self.sla_hours} hours.\n\n"
            "Summary:\n"
            f"{ticket.description or summary or 'No description provided'}\n\n"
            "If you have more details, reply to this email and they'll be "
            "attached to your ticket automatically.\n\n"
            "Thank you,\nSupport Team"
        )

        result = await self._mail_sender.send(OutboundEmail(
            to=ticket.email,
            subject=format_ticket_subject(ticket.id, ticket.subject, self._subject_tag),
            text=text,
            template=MailTemplate.ACKNOWLEDGED,
            metadata={"ticket_id": ticket.id, "category": ticket.category.value},
        ))

        if not result.ok:
            logger.warning(
                "Acknowledgement not delivered",
                extra={"ticket_id": ticket.id, "error": result.error}
            )
        return result

    async def notify_escalation(self, ticket: Ticket, recipients: List[str]) -> int:
        """Send one escalation notice per recipient; returns how many were accepted."""
        subject = f"[ESCALATION] Ticket #{ticket.id} pending > {self.sla_hours} hours"
        text = (
            f"Ticket #{ticket.id} is open past the SLA.\n\n"
            f"User: {ticket.email}\n"
            f"Category: {ticket.category.value}\n"
            f"Summary: {ticket.description or ticket.subject}\n\n"
            "Please review and respond."
        )

        delivered = 0
        for recipient in recipients:
            result = await self._mail_sender.send(OutboundEmail(
                to=recipient,
                subject=subject,
                text=text,
                template=MailTemplate.ESCALATION,
                metadata={"ticket_id": ticket.id},
            ))
            if result.ok:
                delivered += 1
            else:
                logger.warning(
                    "Escalation notice not delivered",
                    extra={"ticket_id": ticket.id, "recipient": recipient, "error": result.error}
                )
        return delivered


class TicketLifecycleService:
    """
    Creates, appends to, reopens and escalates tickets.

    Coordinates the store, the dedup ledger, the categorizer and the
    automated responder.
    """

    def __init__(
        self,
        store: ISupportStore,
        ledger: "DedupLedger",
        responder: AutomatedResponder,
        sla_minutes: int = 120,
        categorizer: Callable[[str, str], TicketCategory] = categorize,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._ledger = ledger
        self._responder = responder
        self._sla_window = timedelta(minutes=sla_minutes)
        self._categorize = categorizer
        self._clock = clock

    async def create_ticket(
        self,
        email: str,
        subject: str = DEFAULT_SUBJECT,
        description: str = "",
        source: TicketSource = TicketSource.IN_APP,
        category: Optional[TicketCategory] = None,
        user_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Ticket:
        """
        Open a new ticket with its first user message.

        The category is detected from the text unless supplied. The
        auto-response goes out first, then the acknowledgement.
        """
        normalized_email = (email or "").strip().lower()
        if not normalized_email:
            raise ValidationException("Requester email is required")

        subject = (subject or "").strip() or DEFAULT_SUBJECT
        body = sanitize_message_body(description)
        detected = category or self._categorize(subject, body)
        now = self._clock()

        ticket = await self._store.insert_ticket(Ticket(
            id=None,
            email=normalized_email,
            subject=subject,
            description=body,
            category=detected,
            status=TicketStatus.OPEN,
            sla_due_at=now + self._sla_window,
            last_message_at=now,
            created_at=now,
            updated_at=now,
            source=source,
            user_id=user_id,
            external_message_id=message_id,
        ))

        logger.info(
            "support_ticket_created",
            extra={"ticket_id": ticket.id, "source": source.value, "category": detected.value}
        )

        await self._store.insert_message(TicketMessage(
            id=None,
            ticket_id=ticket.id,
            sender_role=SenderRole.USER,
            body=body or subject,
            created_at=now,
            message_id=message_id,
        ))

        await self._responder.respond(ticket, detected)
        await self._responder.acknowledge(ticket, body)

        return await self._store.get_ticket(ticket.id) or ticket

    async def append_message(
        self,
        ticket: Ticket,
        sender_role: SenderRole,
        body: str,
        message_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Ticket:
        """Append to the thread; a user message reopens a closed ticket."""
        now = self._clock()

        await self._store.insert_message(TicketMessage(
            id=None,
            ticket_id=ticket.id,
            sender_role=sender_role,
            body=sanitize_message_body(body),
            created_at=now,
            message_id=message_id,
            metadata=metadata or {},
        ))

        new_status = ticket.status_after_message(sender_role)
        updated = await self._store.update_ticket(
            ticket.id, {"status": new_status, "last_message_at": now}
        )

        if new_status != ticket.status:
            logger.info("support_ticket_reopened", extra={"ticket_id": ticket.id})

        return updated or ticket

    async def process_incoming_email(self, envelope: InboundEmail) -> Optional[Ticket]:
        """
        Turn one inbound email into a new ticket or a reply on an existing one.

        Returns:
            The created or updated ticket, or None when the message was
            already processed or has no usable sender
        """
        if await self._ledger.has_processed(envelope.message_id):
            logger.info("Skipping already processed email", extra={"message_id": envelope.message_id})
            return None

        sender_email = extract_email_address(envelope.sender)
        if not sender_email:
            logger.warning("Inbound email without sender address", extra={"message_id": envelope.message_id})
            return None

        clean_body = sanitize_message_body(envelope.body)
        ticket = None

        reference = parse_ticket_reference(envelope.subject)
        if reference is not None:
            existing = await self._store.get_ticket(reference)
            if existing is not None:
                ticket = await self.append_message(
                    existing, SenderRole.USER, clean_body or envelope.subject, envelope.message_id
                )
                # Established tickets keep their original category
                await self._responder.respond(ticket, existing.category)
            else:
                logger.info(
                    "Referenced ticket not found, opening a new one",
                    extra={"ticket_id": reference, "message_id": envelope.message_id}
                )

        if ticket is None:
            ticket = await self.create_ticket(
                email=sender_email,
                subject=envelope.subject or DEFAULT_SUBJECT,
                description=clean_body or envelope.subject or "User email",
                source=TicketSource.EMAIL,
                message_id=envelope.message_id,
            )

        await self._ledger.record_processed(ProcessedEmail(
            message_id=envelope.message_id,
            ticket_id=ticket.id,
            sender_email=sender_email,
            subject=envelope.subject,
            received_at=envelope.received_at,
        ))
        return ticket

    async def submit_ticket(
        self,
        email: str,
        subject: str = DEFAULT_SUBJECT,
        description: str = "",
        category: Optional[TicketCategory] = None,
        user_id: Optional[str] = None,
    ) -> Ticket:
        """In-app ticket submission."""
        return await self.create_ticket(
            email=email,
            subject=subject,
            description=description,
            source=TicketSource.IN_APP,
            category=category,
            user_id=user_id,
        )

    async def add_reply(
        self,
        ticket_id: int,
        body: str,
        sender_role: SenderRole = SenderRole.USER,
    ) -> Ticket:
        """Append an in-app reply to an existing ticket."""
        ticket = await self._store.get_ticket(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        if not sanitize_message_body(body):
            raise ValidationException("Message body is empty", {"ticket_id": ticket_id})
        return await self.append_message(ticket, sender_role, body)

    async def get_ticket_with_messages(self, ticket_id: int) -> Tuple[Ticket, List[TicketMessage]]:
        ticket = await self._store.get_ticket(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        return ticket, await self._store.list_messages(ticket_id)

    async def find_sla_breaches(self, now: Optional[datetime] = None) -> List[Ticket]:
        return await self._store.find_tickets(TicketQuery.sla_breaches(now or self._clock()))

    async def escalate(
        self,
        ticket: Ticket,
        notify: Optional[EscalationNotifier] = None,
    ) -> bool:
        """
        Escalate a breached ticket exactly once.

        The escalation is claimed atomically in the store before anyone is
        notified, so a lost claim sends nothing.

        Returns:
            True if this call escalated the ticket, False if it was already claimed

        Raises:
            TicketStateException: ticket is not open or already escalated
        """
        if not ticket.is_open:
            raise TicketStateException(ticket.id, "escalate", f"status is {ticket.status.value}")
        if ticket.is_escalated:
            raise TicketStateException(ticket.id, "escalate", "already escalated")

        now = self._clock()
        if not await self._store.claim_escalation(ticket.id, now):
            logger.info("Escalation already claimed", extra={"ticket_id": ticket.id})
            return False

        notified = await notify(ticket) if notify else 0

        await self._store.insert_message(TicketMessage(
            id=None,
            ticket_id=ticket.id,
            sender_role=SenderRole.SYSTEM,
            body="Escalation email sent to admins due to SLA breach.",
            created_at=now,
            metadata={"escalated": True, "notified": notified},
        ))

        logger.info("support_ticket_escalated", extra={"ticket_id": ticket.id, "notified": notified})
        return True

