"""Tests for the dedup ledger, durable and degraded."""

from typing import Optional

import pytest

from support_desk.core import RepositoryException
from support_desk.tickets.application import (
    AutomatedResponder,
    DedupLedger,
    IProcessedEmailRepository,
    TicketLifecycleService,
)
from support_desk.tickets.domain import ProcessedEmail

from tests.conftest import T0, make_email


def _entry(message_id: str = "<m1@mail.example.com>") -> ProcessedEmail:
    return ProcessedEmail(
        message_id=message_id,
        ticket_id=1,
        sender_email="jane@example.com",
        subject="Cannot sign in",
        received_at=T0,
    )


class CountingRepository(IProcessedEmailRepository):

    def __init__(self):
        self.entries = {}
        self.lookups = 0

    async def get_processed_email(self, message_id: str) -> Optional[ProcessedEmail]:
        self.lookups += 1
        return self.entries.get(message_id)

    async def insert_processed_email(self, entry: ProcessedEmail) -> ProcessedEmail:
        return self.entries.setdefault(entry.message_id, entry)


class FailingRepository(IProcessedEmailRepository):

    async def get_processed_email(self, message_id: str) -> Optional[ProcessedEmail]:
        raise RepositoryException("database unavailable")

    async def insert_processed_email(self, entry: ProcessedEmail) -> ProcessedEmail:
        raise RepositoryException("database unavailable")


class TestDurableLedger:

    @pytest.mark.asyncio
    async def test_survives_restart(self):
        repository = CountingRepository()
        await DedupLedger(repository).record_processed(_entry())

        fresh = DedupLedger(repository)

        assert fresh.is_durable
        assert await fresh.has_processed("<m1@mail.example.com>")

    @pytest.mark.asyncio
    async def test_unknown_id(self):
        assert not await DedupLedger(CountingRepository()).has_processed("<other@example.com>")

    @pytest.mark.asyncio
    async def test_cache_avoids_second_lookup(self):
        repository = CountingRepository()
        repository.entries["<m1@mail.example.com>"] = _entry()
        ledger = DedupLedger(repository)

        assert await ledger.has_processed("<m1@mail.example.com>")
        assert await ledger.has_processed("<m1@mail.example.com>")
        assert repository.lookups == 1

    @pytest.mark.asyncio
    async def test_recorded_ids_never_hit_repository(self):
        repository = CountingRepository()
        ledger = DedupLedger(repository)

        await ledger.record_processed(_entry())

        assert await ledger.has_processed("<m1@mail.example.com>")
        assert repository.lookups == 0

    @pytest.mark.asyncio
    async def test_empty_message_id(self):
        ledger = DedupLedger(CountingRepository())

        assert not await ledger.has_processed("")
        assert not await ledger.has_processed(None)


class TestDegradedLedger:

    @pytest.mark.asyncio
    async def test_cache_only_forgets_on_restart(self):
        ledger = DedupLedger()
        await ledger.record_processed(_entry())

        assert not ledger.is_durable
        assert await ledger.has_processed("<m1@mail.example.com>")
        assert not await DedupLedger().has_processed("<m1@mail.example.com>")

    @pytest.mark.asyncio
    async def test_failing_lookup_answers_not_processed(self):
        assert not await DedupLedger(FailingRepository()).has_processed("<m1@mail.example.com>")

    @pytest.mark.asyncio
    async def test_failing_write_still_caches(self):
        ledger = DedupLedger(FailingRepository())

        await ledger.record_processed(_entry())

        assert await ledger.has_processed("<m1@mail.example.com>")

    @pytest.mark.asyncio
    async def test_ingestion_continues_when_ledger_fails(self, store, mail_sender, clock):
        responder = AutomatedResponder(store, mail_sender, clock=clock)
        lifecycle = TicketLifecycleService(store, DedupLedger(FailingRepository()), responder, clock=clock)

        first = await lifecycle.process_incoming_email(make_email())
        second = await lifecycle.process_incoming_email(make_email())

        assert first.id == 1
        assert second is None
