"""Tests for inbox polling and message parsing."""

import asyncio
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Dict, List, Optional

import pytest

from support_desk.core import MailboxException
from support_desk.tickets.application import (
    FetchedMessage,
    IMailbox,
    InboxConfig,
    MailSourceAdapter,
    parse_inbound_email,
)

from tests.conftest import T0

CONFIG = InboxConfig(
    enabled=True,
    host="imap.example.com",
    username="support@example.com",
    password="secret",
    poll_interval_seconds=60,
)


def raw_email(
    message_id: Optional[str] = "<m1@mail.example.com>",
    sender: str = "Jane Doe <jane@example.com>",
    subject: str = "Cannot sign in",
    body: str = "Login fails every time.",
    html: bool = False,
    date: Optional[str] = "Mon, 05 Jan 2026 09:00:00 +0000",
) -> bytes:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = "support@example.com"
    message["Subject"] = subject
    if message_id:
        message["Message-ID"] = message_id
    if date:
        message["Date"] = date
    message.set_content(body, subtype="html" if html else "plain")
    return message.as_bytes()


class FakeMailbox(IMailbox):

    def __init__(self, messages: Dict[str, bytes], fail_on: Optional[str] = None):
        self.messages = messages
        self.fail_on = fail_on
        self.calls: List[str] = []
        self.seen: List[str] = []
        self.connect_gate: Optional[asyncio.Event] = None

    def _step(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_on == name:
            raise MailboxException(f"{name} failed")

    async def connect(self) -> None:
        self._step("connect")
        if self.connect_gate is not None:
            await self.connect_gate.wait()

    async def select_folder(self, folder: str) -> None:
        self._step("select_folder")

    async def search_unseen(self) -> List[str]:
        self._step("search_unseen")
        return [uid for uid in self.messages if uid not in self.seen]

    async def fetch(self, uids: List[str]) -> List[FetchedMessage]:
        self._step("fetch")
        return [FetchedMessage(uid=uid, source=self.messages[uid]) for uid in uids]

    async def mark_seen(self, uid: str) -> None:
        self._step("mark_seen")
        self.seen.append(uid)

    async def logout(self) -> None:
        self.calls.append("logout")


class TestParse:

    def test_plain_message(self):
        envelope = parse_inbound_email(FetchedMessage(uid="7", source=raw_email()))

        assert envelope.message_id == "<m1@mail.example.com>"
        assert "jane@example.com" in envelope.sender
        assert envelope.subject == "Cannot sign in"
        assert envelope.body.strip() == "Login fails every time."
        assert envelope.received_at == T0

    def test_missing_message_id_uses_uid(self):
        envelope = parse_inbound_email(FetchedMessage(uid="7", source=raw_email(message_id=None)))

        assert envelope.message_id == "7"

    def test_html_only_body(self):
        envelope = parse_inbound_email(
            FetchedMessage(uid="7", source=raw_email(body="<p>Hello</p>", html=True))
        )

        assert "<p>Hello</p>" in envelope.body

    def test_missing_date_uses_internal_date(self):
        internal = datetime(2026, 1, 4, 8, 30, tzinfo=timezone.utc)
        envelope = parse_inbound_email(
            FetchedMessage(uid="7", source=raw_email(date=None), internal_date=internal)
        )

        assert envelope.received_at == internal

    def test_unparseable_date_uses_internal_date(self):
        internal = datetime(2026, 1, 4, 8, 30, tzinfo=timezone.utc)
        envelope = parse_inbound_email(
            FetchedMessage(uid="7", source=raw_email(date="not a date"), internal_date=internal)
        )

        assert envelope.received_at == internal

    def test_missing_date_falls_back_to_clock(self):
        envelope = parse_inbound_email(
            FetchedMessage(uid="7", source=raw_email(date=None)), clock=lambda: T0
        )

        assert envelope.received_at == T0


class TestPoll:

    @pytest.mark.asyncio
    async def test_processes_unseen_and_marks_seen(self, lifecycle, store):
        mailbox = FakeMailbox({
            "1": raw_email(),
            "2": raw_email(message_id="<m2@mail.example.com>", sender="bob@example.com", subject="OTP missing"),
        })
        adapter = MailSourceAdapter(CONFIG, lifecycle, lambda: mailbox)

        assert await adapter.poll() == 2

        assert mailbox.seen == ["1", "2"]
        assert mailbox.calls[-1] == "logout"
        assert (await store.get_ticket(1)).email == "jane@example.com"
        assert (await store.get_ticket(2)).email == "bob@example.com"
        assert not adapter.is_polling

    @pytest.mark.asyncio
    async def test_nothing_unseen(self, lifecycle):
        mailbox = FakeMailbox({})
        adapter = MailSourceAdapter(CONFIG, lifecycle, lambda: mailbox)

        assert await adapter.poll() == 0
        assert "fetch" not in mailbox.calls
        assert mailbox.calls[-1] == "logout"

    @pytest.mark.asyncio
    async def test_redelivered_message_creates_one_ticket(self, lifecycle, store):
        mailbox = FakeMailbox({"1": raw_email()})
        adapter = MailSourceAdapter(CONFIG, lifecycle, lambda: mailbox)
        await adapter.poll()

        # Server lost the \Seen flag
        mailbox.seen.clear()
        await adapter.poll()

        assert await store.get_ticket(2) is None

    @pytest.mark.asyncio
    async def test_failure_still_logs_out(self, lifecycle, store):
        mailbox = FakeMailbox({"1": raw_email()}, fail_on="fetch")
        adapter = MailSourceAdapter(CONFIG, lifecycle, lambda: mailbox)

        assert await adapter.poll() == 0

        assert mailbox.calls[-1] == "logout"
        assert mailbox.seen == []
        assert await store.get_ticket(1) is None
        assert not adapter.is_polling

    @pytest.mark.asyncio
    async def test_connect_failure_still_logs_out(self, lifecycle):
        mailbox = FakeMailbox({"1": raw_email()}, fail_on="connect")
        adapter = MailSourceAdapter(CONFIG, lifecycle, lambda: mailbox)

        assert await adapter.poll() == 0
        assert mailbox.calls == ["connect", "logout"]

    @pytest.mark.asyncio
    async def test_overlapping_poll_is_skipped(self, lifecycle):
        mailbox = FakeMailbox({"1": raw_email()})
        mailbox.connect_gate = asyncio.Event()
        opened = []

        def factory():
            opened.append(mailbox)
            return mailbox

        adapter = MailSourceAdapter(CONFIG, lifecycle, factory)

        in_flight = asyncio.create_task(adapter.poll())
        while "connect" not in mailbox.calls:
            await asyncio.sleep(0)

        assert adapter.is_polling
        assert await adapter.poll() == 0
        assert len(opened) == 1

        mailbox.connect_gate.set()
        assert await in_flight == 1
        assert len(opened) == 1


class TestStart:

    def test_disabled(self, lifecycle):
        config = InboxConfig(enabled=False, host="", username="", password=None)
        adapter = MailSourceAdapter(config, lifecycle, lambda: FakeMailbox({}))

        assert adapter.start() is None
        assert not adapter.is_scheduled

    def test_missing_credentials(self, lifecycle):
        config = InboxConfig(enabled=True, host="imap.example.com", username="support", password=None)
        adapter = MailSourceAdapter(config, lifecycle, lambda: FakeMailbox({}))

        assert not config.is_configured
        assert adapter.start() is None

    @pytest.mark.asyncio
    async def test_start_schedules_once(self, lifecycle):
        adapter = MailSourceAdapter(CONFIG, lifecycle, lambda: FakeMailbox({}))
        try:
            first = adapter.start()
            assert first is not None
            assert adapter.start() is first
            assert adapter.is_scheduled
        finally:
            adapter.stop()

        assert not adapter.is_scheduled
