"""
Ticket Value Objects
====================

Immutable value objects and pure helpers for the ticket domain:
canned response templates, subject-line ticket references and message
body sanitization.
"""

import re
from dataclasses import dataclass
from email.utils import parseaddr
from typing import Dict, Optional

import nh3

from support_desk.config import TicketCategory

TICKET_REFERENCE_PATTERN = re.compile(r"ticket\s*#(\d+)", re.IGNORECASE)
TICKET_TAG_PATTERN = re.compile(r"\[[^\]]*ticket\s*#\d+[^\]]*\]", re.IGNORECASE)

DEFAULT_SUBJECT = "Support Request"

# Ticket ids are 32-bit integer primary keys
MAX_TICKET_ID = 2**31 - 1

# Fields a generic ticket update may not touch
PROTECTED_TICKET_FIELDS = frozenset({"id", "created_at", "escalated_at"})


@dataclass(frozen=True)
class ResponseTemplate:
    """A canned reply; ``{ticket_id}`` in the body is replaced on render."""

    subject: str
    body: str

    def render(self, ticket_id: int) -> str:
        return self.body.replace("{ticket_id}", str(ticket_id))


DEFAULT_RESPONSE_TEMPLATES: Dict[TicketCategory, ResponseTemplate] = {
    TicketCategory.LOGIN_ISSUE: ResponseTemplate(
        subject="We received your login issue",
        body=(
            "We see you're having trouble signing in. We've reset your session "
            "caches and you can try again now.\n\n"
            "If you still cannot sign in, please reply to this email with any "
            "error message you see. (Ticket #{ticket_id})"
        ),
    ),
    TicketCategory.PASSWORD_RESET: ResponseTemplate(
        subject="Password reset help",
        body=(
            "We've issued a fresh password reset flow for your account.\n\n"
            "If you do not receive the reset link within a few minutes, check "
            "that emails from our support address are allowed and reply so we "
            "can assist further. (Ticket #{ticket_id})"
        ),
    ),
    TicketCategory.VERIFICATION: ResponseTemplate(
        subject="Email verification assistance",
        body=(
            "We've re-sent your verification link. Please check your inbox and "
            "spam folder.\n\n"
            "If the link expires or you don't receive it, reply to this email "
            "and we'll escalate immediately. (Ticket #{ticket_id})"
        ),
    ),
    TicketCategory.OTP_ISSUE: ResponseTemplate(
        subject="One-time code support",
        body=(
            "We refreshed your OTP request and cleared pending attempts. Please "
            "request a new code and try again.\n\n"
            "If the new code fails, reply with your phone or email and we will "
            "investigate within the SLA. (Ticket #{ticket_id})"
        ),
    ),
    TicketCategory.PAYMENT_ISSUE: ResponseTemplate(
        subject="Payment issue acknowledged",
        body=(
            "We've logged your payment concern and notified the payments team.\n\n"
            "If you have a transaction reference, please share it in a reply so "
            "we can reconcile it faster. (Ticket #{ticket_id})"
        ),
    ),
    TicketCategory.PROFILE_ISSUE: ResponseTemplate(
        subject="Profile update assistance",
        body=(
            "We've queued a profile sync for your account.\n\n"
            "If specific fields are failing to save, reply with a screenshot so "
            "we can correct them quickly. (Ticket #{ticket_id})"
        ),
    ),
}


def parse_ticket_reference(subject: Optional[str]) -> Optional[int]:
    """
    Extract the ticket number from a subject line.

    ``"Re: [Support – Ticket #7] Issue"`` -> 7. Returns None when the
    subject carries no reference or the number cannot be a ticket id.
    """
    match = TICKET_REFERENCE_PATTERN.search(subject or "")
    if not match or len(match.group(1)) > len(str(MAX_TICKET_ID)):
        return None
    ticket_id = int(match.group(1))
    return ticket_id if 0 < ticket_id <= MAX_TICKET_ID else None


def format_ticket_subject(ticket_id: int, subject: Optional[str], tag: str = "Support") -> str:
    """Prefix ``subject`` with the ticket tag, replacing any tag already present."""
    base = TICKET_TAG_PATTERN.sub("", subject or "").strip() or DEFAULT_SUBJECT
    return f"[{tag} – Ticket #{ticket_id}] {base}"


def sanitize_message_body(value: Optional[str]) -> str:
    """Strip all markup, keeping the text content."""
    return nh3.clean(value or "", tags=set(), attributes={}).strip()


def extract_email_address(sender: Optional[str]) -> str:
    """``'Jane <jane@example.com>'`` -> ``'jane@example.com'``."""
    _, address = parseaddr(sender or "")
    return (address or sender or "").strip().lower()
