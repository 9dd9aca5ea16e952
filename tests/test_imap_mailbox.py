"""Tests for the imap_tools mailbox session."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from support_desk.core import MailboxException
from support_desk.tickets.application import parse_inbound_email
from support_desk.tickets.infrastructure import ImapMailbox
from support_desk.tickets.infrastructure.external import parse_internal_dates

from tests.test_inbox import CONFIG, raw_email


class FakeClient:

    def __init__(self, status="OK", data=None):
        self.status = status
        self.data = data or []
        self.commands = []

    def uid(self, command, uid_set, parts):
        self.commands.append((command, uid_set, parts))
        return self.status, self.data


class FakeSession:

    def __init__(self, client, messages):
        self.client = client
        self.messages = messages

    def fetch(self, criteria, mark_seen=True, bulk=False):
        assert mark_seen is False
        return [
            SimpleNamespace(uid=uid, obj=SimpleNamespace(as_bytes=lambda source=source: source))
            for uid, source in self.messages.items()
        ]


def test_parse_internal_dates():
    dates = parse_internal_dates([
        b'1 (UID 5 INTERNALDATE " 4-Jan-2026 08:30:00 +0000")',
        b'2 (INTERNALDATE "05-Jan-2026 10:00:00 +0200" UID 6)',
        b'3 (UID 7 INTERNALDATE "garbage")',
        b")",
        None,
    ])

    assert dates == {
        "5": datetime(2026, 1, 4, 8, 30, tzinfo=timezone.utc),
        "6": datetime(2026, 1, 5, 10, 0, tzinfo=timezone(timedelta(hours=2))),
    }


@pytest.mark.asyncio
async def test_fetch_attaches_internal_date():
    client = FakeClient(data=[b'1 (UID 5 INTERNALDATE "04-Jan-2026 08:30:00 +0000")'])
    mailbox = ImapMailbox(CONFIG)
    mailbox._mailbox = FakeSession(client, {"5": raw_email(date=None), "6": raw_email(date=None)})

    fetched = await mailbox.fetch(["5", "6"])

    assert client.commands == [("FETCH", "5,6", "(INTERNALDATE)")]
    assert fetched[0].internal_date == datetime(2026, 1, 4, 8, 30, tzinfo=timezone.utc)
    assert fetched[1].internal_date is None
    envelope = parse_inbound_email(fetched[0])
    assert envelope.received_at == datetime(2026, 1, 4, 8, 30, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_fetch_without_internal_dates():
    mailbox = ImapMailbox(CONFIG)
    mailbox._mailbox = FakeSession(FakeClient(status="NO"), {"5": raw_email()})

    fetched = await mailbox.fetch(["5"])

    assert fetched[0].internal_date is None


@pytest.mark.asyncio
async def test_fetch_requires_connection():
    with pytest.raises(MailboxException):
        await ImapMailbox(CONFIG).fetch(["5"])
