"""Tests for ticket creation, threading, dedup and reopen."""

from datetime import timedelta

import pytest

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

from tests.conftest import T0, make_email


class TestCreateFromEmail:

    @pytest.mark.asyncio
    async def test_new_email_opens_ticket(self, lifecycle, store, mail_sender):
        ticket = await lifecycle.process_incoming_email(make_email())

        assert ticket.id == 1
        assert ticket.email == "jane@example.com"
        assert ticket.source == TicketSource.EMAIL
        assert ticket.category == TicketCategory.LOGIN_ISSUE
        assert ticket.status == TicketStatus.OPEN
        assert ticket.sla_due_at == T0 + timedelta(minutes=120)
        assert ticket.last_response_at == T0
        assert ticket.escalated_at is None

        messages = await store.list_messages(ticket.id)
        assert [m.sender_role for m in messages] == [SenderRole.USER, SenderRole.AGENT]
        assert messages[0].body == "Login fails every time."
        assert messages[0].message_id == "<m1@mail.example.com>"
        assert messages[1].metadata == {"automated": True, "category": "login_issue"}
        assert "Ticket #1" in messages[1].body

    @pytest.mark.asyncio
    async def test_auto_response_then_acknowledgement(self, lifecycle, mail_sender):
        await lifecycle.process_incoming_email(make_email())

        assert [e.template for e in mail_sender.sent] == [
            MailTemplate.AUTO_RESPONSE,
            MailTemplate.ACKNOWLEDGED,
        ]
        auto, ack = mail_sender.sent
        assert auto.to == "jane@example.com"
        assert auto.subject == "[Support – Ticket #1] We received your login issue"
        assert ack.subject == "[Support – Ticket #1] Cannot sign in"
        assert "Ticket #1" in ack.text
        assert "within 2 hours" in ack.text

    @pytest.mark.asyncio
    async def test_general_category_gets_only_acknowledgement(self, lifecycle, store, mail_sender):
        ticket = await lifecycle.process_incoming_email(
            make_email(subject="Question", body="How do I export my data?")
        )

        assert ticket.category == TicketCategory.GENERAL
        assert ticket.last_response_at is None
        assert [e.template for e in mail_sender.sent] == [MailTemplate.ACKNOWLEDGED]
        assert len(await store.list_messages(ticket.id)) == 1

    @pytest.mark.asyncio
    async def test_html_body_is_sanitized(self, lifecycle):
        ticket = await lifecycle.process_incoming_email(
            make_email(body="<div>Login <b>fails</b></div>")
        )
        assert ticket.description == "Login fails"

    @pytest.mark.asyncio
    async def test_empty_body_falls_back_to_subject(self, lifecycle, store):
        ticket = await lifecycle.process_incoming_email(make_email(body=""))

        assert ticket.description == "Cannot sign in"

    @pytest.mark.asyncio
    async def test_missing_sender_is_skipped(self, lifecycle, store, ledger):
        result = await lifecycle.process_incoming_email(make_email(sender=""))

        assert result is None
        assert await store.get_ticket(1) is None
        assert not await ledger.has_processed("<m1@mail.example.com>")

    @pytest.mark.asyncio
    async def test_failed_delivery_keeps_recorded_response(self, lifecycle, store, mail_sender):
        mail_sender.failing.add("jane@example.com")

        ticket = await lifecycle.process_incoming_email(make_email())

        messages = await store.list_messages(ticket.id)
        assert messages[-1].metadata["automated"] is True
        assert ticket.last_response_at == T0


class TestDedup:

    @pytest.mark.asyncio
    async def test_same_message_processed_once(self, lifecycle, store, mail_sender):
        first = await lifecycle.process_incoming_email(make_email())
        sent_after_first = len(mail_sender.sent)
        messages_after_first = len(await store.list_messages(first.id))

        second = await lifecycle.process_incoming_email(make_email())

        assert second is None
        assert await store.get_ticket(2) is None
        assert len(mail_sender.sent) == sent_after_first
        assert len(await store.list_messages(first.id)) == messages_after_first

    @pytest.mark.asyncio
    async def test_ledger_records_ticket(self, lifecycle, store):
        ticket = await lifecycle.process_incoming_email(make_email())

        entry = await store.get_processed_email("<m1@mail.example.com>")
        assert entry.ticket_id == ticket.id
        assert entry.sender_email == "jane@example.com"


class TestThreading:

    @pytest.mark.asyncio
    async def test_reply_appends_to_referenced_ticket(self, lifecycle, store, mail_sender, clock):
        await lifecycle.process_incoming_email(make_email())
        clock.advance(minutes=5)

        ticket = await lifecycle.process_incoming_email(make_email(
            message_id="<m2@mail.example.com>",
            subject="Re: [Support – Ticket #1] Cannot sign in",
            body="Now my payment failed too",
        ))

        assert ticket.id == 1
        assert ticket.last_message_at == T0 + timedelta(minutes=5)
        assert await store.get_ticket(2) is None

        messages = await store.list_messages(1)
        assert [m.sender_role for m in messages] == [
            SenderRole.USER, SenderRole.AGENT, SenderRole.USER, SenderRole.AGENT
        ]
        # Original category, not the reply's text
        assert messages[-1].metadata["category"] == "login_issue"
        assert len(mail_sender.with_template(MailTemplate.ACKNOWLEDGED)) == 1

    @pytest.mark.asyncio
    async def test_unknown_reference_opens_new_ticket(self, lifecycle, store):
        ticket = await lifecycle.process_incoming_email(
            make_email(subject="Re: Ticket #99 still broken")
        )

        assert ticket.id == 1
        assert ticket.subject == "Re: Ticket #99 still broken"
        assert await store.get_ticket(99) is None

    @pytest.mark.asyncio
    async def test_reply_reopens_closed_ticket(self, lifecycle, store):
        await lifecycle.process_incoming_email(make_email())
        await store.update_ticket(1, {"status": TicketStatus.CLOSED})

        ticket = await lifecycle.process_incoming_email(make_email(
            message_id="<m2@mail.example.com>",
            subject="Re: [Support – Ticket #1] Cannot sign in",
            body="It happened again",
        ))

        assert ticket.status == TicketStatus.OPEN


class TestInApp:

    @pytest.mark.asyncio
    async def test_submit_ticket(self, lifecycle):
        ticket = await lifecycle.submit_ticket(
            email=" Jane@Example.com ",
            subject="Billing",
            description="Please help",
            category=TicketCategory.PAYMENT_ISSUE,
            user_id="user-1",
        )

        assert ticket.email == "jane@example.com"
        assert ticket.source == TicketSource.IN_APP
        assert ticket.category == TicketCategory.PAYMENT_ISSUE
        assert ticket.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_submit_requires_email(self, lifecycle):
        with pytest.raises(ValidationException):
            await lifecycle.submit_ticket(email="  ", description="help")

    @pytest.mark.asyncio
    async def test_add_reply_reopens(self, lifecycle, store):
        ticket = await lifecycle.submit_ticket(email="jane@example.com", description="help")
        await store.update_ticket(ticket.id, {"status": TicketStatus.CLOSED})

        updated = await lifecycle.add_reply(ticket.id, "still need help")

        assert updated.status == TicketStatus.OPEN

    @pytest.mark.asyncio
    async def test_agent_reply_keeps_closed(self, lifecycle, store):
        ticket = await lifecycle.submit_ticket(email="jane@example.com", description="help")
        await store.update_ticket(ticket.id, {"status": TicketStatus.CLOSED})

        updated = await lifecycle.add_reply(ticket.id, "closing note", SenderRole.AGENT)

        assert updated.status == TicketStatus.CLOSED

    @pytest.mark.asyncio
    async def test_add_reply_unknown_ticket(self, lifecycle):
        with pytest.raises(ResourceNotFoundException):
            await lifecycle.add_reply(42, "hello")

    @pytest.mark.asyncio
    async def test_add_reply_empty_body(self, lifecycle):
        ticket = await lifecycle.submit_ticket(email="jane@example.com", description="help")
        with pytest.raises(ValidationException):
            await lifecycle.add_reply(ticket.id, "<p> </p>")

    @pytest.mark.asyncio
    async def test_get_ticket_with_messages(self, lifecycle):
        ticket = await lifecycle.submit_ticket(email="jane@example.com", description="cannot sign in")

        found, messages = await lifecycle.get_ticket_with_messages(ticket.id)

        assert found.id == ticket.id
        assert len(messages) == 2

    @pytest.mark.asyncio
    async def test_get_unknown_ticket(self, lifecycle):
        with pytest.raises(ResourceNotFoundException):
            await lifecycle.get_ticket_with_messages(5)


class TestEscalate:

    @pytest.mark.asyncio
    async def test_closed_ticket_cannot_escalate(self, lifecycle, store):
        ticket = await lifecycle.submit_ticket(email="jane@example.com", description="help")
        closed = await store.update_ticket(ticket.id, {"status": TicketStatus.CLOSED})

        with pytest.raises(TicketStateException):
            await lifecycle.escalate(closed)

    @pytest.mark.asyncio
    async def test_lost_claim_notifies_nobody(self, lifecycle, store, clock):
        ticket = await lifecycle.submit_ticket(email="jane@example.com", description="help")
        stale = await store.get_ticket(ticket.id)
        assert await store.claim_escalation(ticket.id, clock())

        calls = []

        async def notify(t):
            calls.append(t.id)
            return 1

        assert await lifecycle.escalate(stale, notify=notify) is False
        assert calls == []

    @pytest.mark.asyncio
    async def test_escalate_records_system_message(self, lifecycle, store, clock):
        ticket = await lifecycle.submit_ticket(email="jane@example.com", description="help")

        async def notify(t):
            return 3

        assert await lifecycle.escalate(ticket, notify=notify) is True

        escalated = await store.get_ticket(ticket.id)
        assert escalated.escalated_at == clock()
        last = (await store.list_messages(ticket.id))[-1]
        assert last.sender_role == SenderRole.SYSTEM
        assert last.metadata == {"escalated": True, "notified": 3}

        with pytest.raises(TicketStateException):
            await lifecycle.escalate(escalated)
