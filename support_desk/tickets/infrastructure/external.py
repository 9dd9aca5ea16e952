"""
Ticket External Service Integrations
====================================

External services for the support desk:
- Transactional mail API client (HTTP, circuit breaker + retry)
- IMAP mailbox session for inbox polling
- YAML response template file with hot reload
"""

import asyncio
import re
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import yaml
from imap_tools import AND, BaseMailBox, MailBox, MailBoxUnencrypted, MailMessageFlags
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from support_desk.config import TicketCategory
from support_desk.core import MailboxException
from support_desk.shared.infrastructure.logging import get_logger
from support_desk.tickets.application.inbox import FetchedMessage, IMailbox, InboxConfig
from support_desk.tickets.application.services import (
    IMailSender,
    ITemplateProvider,
    OutboundEmail,
    SendResult,
)
from support_desk.tickets.domain import DEFAULT_RESPONSE_TEMPLATES, ResponseTemplate

logger = get_logger(__name__)


# ========== Outbound mail ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class HttpMailSender(IMailSender):
    """
    Transactional mail API client (Resend-compatible JSON).

    Never raises: every outcome, including a missing API key, an open
    circuit and exhausted retries, comes back as a SendResult.
    """

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        from_email: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
    ):
        self._api_url = api_url
        self._api_key = api_key
        self._from_email = from_email
        self._timeout = timeout
        self._http_client = client
        self._max_retries = max(1, max_retries)
        self._retry_base_delay = retry_base_delay
        self._circuit_breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=60)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def _build_payload(self, email: OutboundEmail) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "from": self._from_email,
            "to": [email.to],
            "subject": email.subject,
            "text": email.text,
            "tags": [{"name": "template", "value": email.template}],
        }
        ticket_id = email.metadata.get("ticket_id")
        if ticket_id is not None:
            payload["headers"] = {"X-Support-Ticket-Id": str(ticket_id)}
        return payload

    async def send(self, email: OutboundEmail) -> SendResult:
        if not self._api_key:
            logger.debug("Mail API key not configured, skipping send", extra={"template": email.template})
            return SendResult(ok=False, error="mail API not configured")

        if not self._circuit_breaker.allow_request():
            logger.warning("Circuit breaker open, skipping email", extra={"template": email.template})
            return SendResult(ok=False, error="circuit open")

        payload = self._build_payload(email)
        headers = {"Authorization": f"Bearer {self._api_key}"}
        last_error = "unknown error"

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._api_url, json=payload, headers=headers)

                if response.is_success:
                    self._circuit_breaker.record_success()
                    try:
                        message_id = response.json().get("id")
                    except ValueError:
                        message_id = None
                    logger.info(
                        "Email sent",
                        extra={"template": email.template, "message_id": message_id}
                    )
                    return SendResult(ok=True, message_id=message_id)

                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "Mail API returned an error status",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
                # Client errors will not succeed on retry
                if 400 <= response.status_code < 500 and response.status_code != 429:
                    break

            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.error(
                    "Email send failed",
                    extra={"error": last_error, "attempt": attempt + 1, "template": email.template}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_base_delay * 2 ** attempt)

        self._circuit_breaker.record_failure()
        return SendResult(ok=False, error=last_error)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== IMAP ==========

_FETCH_UID_PATTERN = re.compile(rb"UID (\d+)")
_INTERNALDATE_PATTERN = re.compile(rb'INTERNALDATE "([^"]+)"')


def parse_internal_dates(data: List[Any]) -> Dict[str, datetime]:
    """
    Map UID -> INTERNALDATE from a raw ``UID FETCH ... (INTERNALDATE)`` response.

    Lines without a UID or with an unparseable date are skipped.
    """
    dates: Dict[str, datetime] = {}
    for item in data:
        line = item[0] if isinstance(item, tuple) else item
        if not isinstance(line, bytes):
            continue
        uid = _FETCH_UID_PATTERN.search(line)
        value = _INTERNALDATE_PATTERN.search(line)
        if not uid or not value:
            continue
        try:
            # e.g. " 5-Jan-2026 09:00:00 +0000"
            dates[uid.group(1).decode()] = datetime.strptime(
                value.group(1).decode().strip(), "%d-%b-%Y %H:%M:%S %z"
            )
        except ValueError:
            logger.debug("Unparseable INTERNALDATE", extra={"line": line.decode(errors="replace")})
    return dates


class ImapMailbox(IMailbox):
    """
    One IMAP session built on imap_tools.

    imap_tools is blocking, so every call runs in a worker thread.
    """

    def __init__(self, config: InboxConfig):
        self._config = config
        self._mailbox: Optional[BaseMailBox] = None

    @property
    def _session(self) -> BaseMailBox:
        if self._mailbox is None:
            raise MailboxException("Mailbox is not connected")
        return self._mailbox

    async def _run(self, operation: str, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except MailboxException:
            raise
        except Exception as e:
            raise MailboxException(
                f"{operation} failed: {e}",
                {"host": self._config.host, "operation": operation}
            ) from e

    def _open(self) -> BaseMailBox:
        mailbox_class = MailBox if self._config.secure else MailBoxUnencrypted
        return mailbox_class(self._config.host, self._config.port).login(
            self._config.username, self._config.password, initial_folder=None
        )

    async def connect(self) -> None:
        self._mailbox = await self._run("connect", self._open)
        logger.debug("Mailbox connected", extra={"host": self._config.host})

    async def select_folder(self, folder: str) -> None:
        await self._run("select folder", self._session.folder.set, folder)

    async def search_unseen(self) -> List[str]:
        uids = await self._run("search", self._session.uids, AND(seen=False))
        return list(uids)

    def _internal_dates(self, uids: List[str]) -> Dict[str, datetime]:
        status, data = self._session.client.uid("FETCH", ",".join(uids), "(INTERNALDATE)")
        if status != "OK":
            logger.warning("INTERNALDATE fetch failed", extra={"status": status})
            return {}
        return parse_internal_dates(data)

    def _fetch_sync(self, uids: List[str]) -> List[FetchedMessage]:
        internal_dates = self._internal_dates(uids)
        messages = self._session.fetch(AND(uid=uids), mark_seen=False, bulk=True)
        return [
            FetchedMessage(
                uid=message.uid,
                source=message.obj.as_bytes(),
                internal_date=internal_dates.get(message.uid),
            )
            for message in messages
        ]

    async def fetch(self, uids: List[str]) -> List[FetchedMessage]:
        if not uids:
            return []
        return await self._run("fetch", self._fetch_sync, uids)

    async def mark_seen(self, uid: str) -> None:
        await self._run("flag", self._session.flag, uid, MailMessageFlags.SEEN, True)

    async def logout(self) -> None:
        if self._mailbox is None:
            return
        mailbox, self._mailbox = self._mailbox, None
        await self._run("logout", mailbox.logout)


# ========== Response templates ==========

class TemplateFileHandler(FileSystemEventHandler):
    """Watchdog event handler for response template file changes."""

    def __init__(self, manager: "ResponseTemplateManager", path: Path):
        self.manager = manager
        self.path = path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.path.resolve():
            logger.info("Response template file changed", extra={"path": str(event.src_path)})
            self.manager.reload()


class ResponseTemplateManager(ITemplateProvider):
    """
    Thread-safe response templates with hot-reload support.

    Templates from the YAML file are merged over the built-in defaults::

        templates:
          login_issue:
            subject: We received your login issue
            body: "... (Ticket #{ticket_id})"
    """

    def __init__(self):
        self._templates: Dict[TicketCategory, ResponseTemplate] = dict(DEFAULT_RESPONSE_TEMPLATES)
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> Dict[TicketCategory, ResponseTemplate]:
        """Initial load; a missing file means defaults only."""
        self._path = path
        templates = self._load_from_file(path)
        with self._lock:
            self._templates = templates
        return dict(templates)

    def _load_from_file(self, path: Path) -> Dict[TicketCategory, ResponseTemplate]:
        templates = dict(DEFAULT_RESPONSE_TEMPLATES)
        if not path.exists():
            logger.info("Response template file not found, using defaults", extra={"path": str(path)})
            return templates

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        overrides = data.get("templates") if isinstance(data, dict) else None
        if not isinstance(overrides, dict):
            logger.warning("Template file has no 'templates' mapping, using defaults", extra={"path": str(path)})
            return templates

        for key, value in overrides.items():
            try:
                category = TicketCategory(key)
            except ValueError:
                logger.warning("Ignoring template for unknown category", extra={"category": key})
                continue
            if not isinstance(value, dict) or not value.get("body"):
                logger.warning("Ignoring template without a body", extra={"category": key})
                continue
            default = DEFAULT_RESPONSE_TEMPLATES.get(category)
            templates[category] = ResponseTemplate(
                subject=value.get("subject") or (default.subject if default else "Support update"),
                body=value["body"],
            )
        return templates

    def reload(self) -> bool:
        """Reload templates; on a bad file the previous set stays active."""
        if self._path is None:
            return False

        try:
            templates = self._load_from_file(self._path)
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to reload response templates", extra={"error": str(e)})
            return False

        with self._lock:
            self._templates = templates
        logger.info("Response templates reloaded", extra={"count": len(templates)})
        return True

    def start_watching(self) -> None:
        """Watch the template file; skipped when it does not exist."""
        if self._path is None:
            raise RuntimeError("Templates not loaded. Call load() first.")

        if not self._path.exists():
            logger.info("Template file doesn't exist, skipping file watch", extra={"path": str(self._path)})
            return

        try:
            self._observer = Observer()
            self._observer.schedule(
                TemplateFileHandler(self, self._path),
                str(self._path.resolve().parent),
                recursive=False
            )
            self._observer.start()
            logger.info("Started watching template file", extra={"path": str(self._path)})
        except OSError as e:
            # inotify is unavailable in some containers
            logger.warning("File watching not available, using static templates", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_template(self, category: TicketCategory) -> Optional[ResponseTemplate]:
        with self._lock:
            return self._templates.get(category)
