"""
Support Inbox Polling
=====================

Pulls unseen mail from the support mailbox and feeds each message to the
ticket lifecycle service.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from apscheduler.job import Job
from imap_tools import MailMessage

from support_desk.config import Settings
from support_desk.shared.infrastructure.logging import get_logger, log_latency
from support_desk.shared.infrastructure.scheduler import PeriodicJob
from support_desk.tickets.application.services import (
    Clock,
    TicketLifecycleService,
    utc_now,
)
from support_desk.tickets.domain import InboundEmail

logger = get_logger(__name__)


@dataclass(frozen=True)
class InboxConfig:
    """Connection and polling settings for the support mailbox."""
    enabled: bool
    host: str
    username: str
    password: Optional[str]
    port: int = 993
    secure: bool = True
    folder: str = "INBOX"
    poll_interval_seconds: int = 120

    @classmethod
    def from_settings(cls, settings: Settings) -> "InboxConfig":
        return cls(
            enabled=settings.support_inbox_enabled,
            host=settings.support_inbox_host,
            username=settings.support_inbox_username,
            password=settings.support_inbox_password,
            port=settings.support_inbox_port,
            secure=settings.support_inbox_secure,
            folder=settings.support_inbox_folder,
            poll_interval_seconds=settings.support_inbox_poll_interval,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.username and self.password)


@dataclass(frozen=True)
class FetchedMessage:
    """Raw RFC 822 source of one message plus server metadata."""
    uid: str
    source: bytes
    internal_date: Optional[datetime] = None


class IMailbox(ABC):
    """One session against the support mailbox."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection and authenticate."""

    @abstractmethod
    async def select_folder(self, folder: str) -> None:
        """Select the folder to work on."""

    @abstractmethod
    async def search_unseen(self) -> List[str]:
        """UIDs of messages without the \\Seen flag."""

    @abstractmethod
    async def fetch(self, uids: List[str]) -> List[FetchedMessage]:
        """Fetch raw source for the given UIDs without marking them seen."""

    @abstractmethod
    async def mark_seen(self, uid: str) -> None:
        """Add the \\Seen flag."""

    @abstractmethod
    async def logout(self) -> None:
        """Close the session. Must be safe to call after a failed connect."""


def parse_inbound_email(fetched: FetchedMessage, clock: Clock = utc_now) -> InboundEmail:
    """
    Normalize a fetched message.

    Falls back to the UID when there is no Message-ID header, to the HTML
    part when there is no text part, and to the server's internal date
    (then the current time) when the Date header is missing or unparseable.
    """
    message = MailMessage.from_bytes(fetched.source)

    message_ids = message.headers.get("message-id", ())
    message_id = message_ids[0].strip() if message_ids else ""

    received_at = message.date if message.date_str else None
    # imap_tools reports an unparseable Date header as 1900-01-01
    if received_at is None or received_at.year <= 1900:
        received_at = fetched.internal_date or clock()
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)

    return InboundEmail(
        message_id=message_id or str(fetched.uid),
        sender=message.from_ or "",
        subject=message.subject or "",
        body=message.text or message.html or "",
        received_at=received_at,
    )


class MailSourceAdapter:
    """
    Polls the support mailbox on an interval.

    Each cycle opens a fresh mailbox session, processes unseen messages one
    at a time in order, flags each one seen after it was handled and always
    logs out. A tick that fires while the previous cycle is still running
    does nothing.
    """

    def __init__(
        self,
        config: InboxConfig,
        lifecycle: TicketLifecycleService,
        mailbox_factory: Callable[[], IMailbox],
        clock: Clock = utc_now,
    ):
        self._config = config
        self._lifecycle = lifecycle
        self._mailbox_factory = mailbox_factory
        self._clock = clock
        self._polling = False
        self._job: Optional[PeriodicJob] = None

    @property
    def is_polling(self) -> bool:
        return self._polling

    @property
    def is_scheduled(self) -> bool:
        return self._job is not None and self._job.is_running

    async def poll(self) -> int:
        """
        Run one polling cycle.

        Returns:
            Number of messages handed to the lifecycle service (0 when the
            cycle was skipped or failed)
        """
        if self._polling:
            logger.debug("Inbox poll already in flight, skipping tick")
            return 0

        self._polling = True
        try:
            with log_latency(logger, "inbox_poll", folder=self._config.folder):
                return await self._process_unseen()
        except Exception as e:
            logger.error(
                "Inbox polling error",
                extra={"error": str(e), "error_type": type(e).__name__}
            )
            return 0
        finally:
            self._polling = False

    async def _process_unseen(self) -> int:
        mailbox = self._mailbox_factory()
        processed = 0
        try:
            await mailbox.connect()
            await mailbox.select_folder(self._config.folder)
            uids = await mailbox.search_unseen()
            if not uids:
                return 0

            for fetched in await mailbox.fetch(uids):
                envelope = parse_inbound_email(fetched, self._clock)
                await self._lifecycle.process_incoming_email(envelope)
                await mailbox.mark_seen(fetched.uid)
                processed += 1
        finally:
            try:
                await mailbox.logout()
            except Exception as e:
                logger.warning("Mailbox logout failed", extra={"error": str(e)})

        logger.info("Inbox messages processed", extra={"count": processed})
        return processed

    def start(self) -> Optional[Job]:
        """
        Start polling; the first cycle runs immediately.

        Returns None without scheduling anything when the inbox is disabled
        or its settings are incomplete.
        """
        if not self._config.enabled:
            logger.info("Support inbox polling disabled")
            return None

        if not self._config.is_configured:
            logger.warning(
                "Missing IMAP configuration; set SUPPORT_INBOX_HOST, "
                "SUPPORT_INBOX_USERNAME and SUPPORT_INBOX_PASSWORD to poll the inbox"
            )
            return None

        if self._job is None:
            self._job = PeriodicJob(
                job_id="support_inbox_poll",
                name="Support inbox poller",
                interval_seconds=self._config.poll_interval_seconds,
                job_func=self.poll,
                run_immediately=True,
            )
        return self._job.start()

    def stop(self) -> None:
        if self._job is not None:
            self._job.stop()
