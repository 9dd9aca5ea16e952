"""
Keyword categorizer for inbound support requests.

Rules are evaluated in declared order and the first match wins, so the
order of ``CATEGORY_RULES`` is part of the behavior.
"""

from typing import Callable, List, Optional, Tuple

from support_desk.config import TicketCategory

Predicate = Callable[[str], bool]


def contains_all(*keywords: str) -> Predicate:
    return lambda text: all(keyword in text for keyword in keywords)


def contains_any(*keywords: str) -> Predicate:
    return lambda text: any(keyword in text for keyword in keywords)


CATEGORY_RULES: List[Tuple[Predicate, TicketCategory]] = [
    (contains_all("reset", "password"), TicketCategory.PASSWORD_RESET),
    (contains_any("verification", "verify", "code expired"), TicketCategory.VERIFICATION),
    (contains_any("otp", "code", "mfa"), TicketCategory.OTP_ISSUE),
    (contains_any("payment", "subscription"), TicketCategory.PAYMENT_ISSUE),
    (contains_any("profile", "update account"), TicketCategory.PROFILE_ISSUE),
    (contains_any("login", "sign in", "signin"), TicketCategory.LOGIN_ISSUE),
]


def categorize(subject: Optional[str], body: Optional[str]) -> TicketCategory:
    """Map subject and body text to a ticket category."""
    text = f"{subject or ''} {body or ''}".lower()
    for predicate, category in CATEGORY_RULES:
        if predicate(text):
            return category
    return TicketCategory.GENERAL
