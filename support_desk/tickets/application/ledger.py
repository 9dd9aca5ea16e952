"""
Dedup Ledger
============

Remembers which inbound mail message ids already produced a ticket or a
reply, so mailbox redelivery does not open duplicate tickets.
"""

from typing import Optional, Set

from support_desk.core import RepositoryException
from support_desk.shared.infrastructure.logging import get_logger
from support_desk.tickets.application.services import IProcessedEmailRepository
from support_desk.tickets.domain import ProcessedEmail

logger = get_logger(__name__)


class DedupLedger:
    """
    Process-local cache in front of an optional durable repository.

    The cache is consulted first and filled after every durable write and
    every confirmed durable hit, so one process never asks the repository
    twice about the same id. Without a repository, or while it is failing,
    duplicates are only detected for the lifetime of this process.
    """

    def __init__(self, repository: Optional[IProcessedEmailRepository] = None):
        self._repository = repository
        self._seen: Set[str] = set()

        if repository is None:
            logger.warning(
                "Dedup ledger running cache-only; redelivered mail is only "
                "detected until the process restarts"
            )

    @property
    def is_durable(self) -> bool:
        return self._repository is not None

    async def has_processed(self, message_id: Optional[str]) -> bool:
        if not message_id:
            return False
        if message_id in self._seen:
            return True
        if self._repository is None:
            return False

        try:
            entry = await self._repository.get_processed_email(message_id)
        except RepositoryException as e:
            logger.error(
                "Dedup lookup failed, answering from cache only",
                extra={"message_id": message_id, "error": str(e)}
            )
            return False

        if entry is None:
            return False

        self._seen.add(message_id)
        return True

    async def record_processed(self, entry: ProcessedEmail) -> None:
        if not entry.message_id or entry.message_id in self._seen:
            return

        if self._repository is not None:
            try:
                await self._repository.insert_processed_email(entry)
            except RepositoryException as e:
                logger.error(
                    "Failed to record processed email, keeping it in cache only",
                    extra={"message_id": entry.message_id, "error": str(e)}
                )

        self._seen.add(entry.message_id)
