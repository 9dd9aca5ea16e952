from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set

import pytest

from support_desk.tickets.application import (
    AutomatedResponder,
    DedupLedger,
    IMailSender,
    OutboundEmail,
    SendResult,
    TicketLifecycleService,
)
from support_desk.tickets.domain import InboundEmail
from support_desk.tickets.infrastructure import InMemorySupportStore

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMailSender(IMailSender):
    """Records every email; recipients in ``failing`` get ok=False."""

    def __init__(self, failing: Optional[Set[str]] = None):
        self.sent: List[OutboundEmail] = []
        self.failing = failing or set()

    async def send(self, email: OutboundEmail) -> SendResult:
        self.sent.append(email)
        if email.to in self.failing:
            return SendResult(ok=False, error="rejected")
        return SendResult(ok=True, message_id=f"msg-{len(self.sent)}")

    def with_template(self, template: str) -> List[OutboundEmail]:
        return [email for email in self.sent if email.template == template]


def make_email(
    message_id: str = "<m1@mail.example.com>",
    sender: str = "Jane Doe <jane@example.com>",
    subject: str = "Cannot sign in",
    body: str = "Login fails every time.",
    received_at: datetime = T0,
) -> InboundEmail:
    return InboundEmail(
        message_id=message_id,
        sender=sender,
        subject=subject,
        body=body,
        received_at=received_at,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemorySupportStore()


@pytest.fixture
def mail_sender():
    return FakeMailSender()


@pytest.fixture
def ledger(store):
    return DedupLedger(store)


@pytest.fixture
def responder(store, mail_sender, clock):
    return AutomatedResponder(store, mail_sender, subject_tag="Support", sla_minutes=120, clock=clock)


@pytest.fixture
def lifecycle(store, ledger, responder, clock):
    return TicketLifecycleService(store, ledger, responder, sla_minutes=120, clock=clock)
