"""
SLA Application Services
========================

Periodic sweep that escalates open tickets whose SLA deadline passed
without an escalation.
"""

from dataclasses import dataclass
from typing import List, Optional

from apscheduler.job import Job

from support_desk.shared.infrastructure.logging import get_logger, log_latency
from support_desk.shared.infrastructure.scheduler import PeriodicJob
from support_desk.tickets.application.services import (
    AutomatedResponder,
    Clock,
    TicketLifecycleService,
    utc_now,
)
from support_desk.tickets.domain import Ticket

logger = get_logger(__name__)


@dataclass(frozen=True)
class SweepResult:
    """Counts from one sweep."""
    breached: int = 0
    escalated: int = 0
    failed: int = 0


class SLAMonitor:
    """
    Escalates SLA breaches on a fixed interval.

    This service:
    1. Queries open, unescalated tickets past their deadline
    2. Escalates each one through the lifecycle service
    3. Notifies every escalation recipient by email

    One ticket failing does not stop the rest of the sweep.
    """

    def __init__(
        self,
        lifecycle: TicketLifecycleService,
        responder: AutomatedResponder,
        recipients: List[str],
        interval_seconds: int = 300,
        clock: Clock = utc_now,
    ):
        self._lifecycle = lifecycle
        self._responder = responder
        self._recipients = list(recipients)
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._job: Optional[PeriodicJob] = None

    @property
    def recipients(self) -> List[str]:
        return list(self._recipients)

    @property
    def job(self) -> Optional[Job]:
        return self._job.job if self._job else None

    async def _notify(self, ticket: Ticket) -> int:
        return await self._responder.notify_escalation(ticket, self._recipients)

    async def sweep(self) -> SweepResult:
        """
        Run one sweep.

        Returns:
            SweepResult; all zeros when the breach query itself failed
        """
        now = self._clock()
        try:
            breaches = await self._lifecycle.find_sla_breaches(now)
        except Exception as e:
            logger.error("SLA breach query failed", extra={"error": str(e)})
            return SweepResult()

        escalated = 0
        failed = 0

        with log_latency(logger, "sla_sweep", breached=len(breaches)):
            for ticket in breaches:
                try:
                    if await self._lifecycle.escalate(ticket, notify=self._notify):
                        escalated += 1
                except Exception as e:
                    failed += 1
                    logger.error(
                        "Failed to escalate ticket",
                        extra={"ticket_id": ticket.id, "error": str(e), "error_type": type(e).__name__}
                    )

        result = SweepResult(breached=len(breaches), escalated=escalated, failed=failed)
        if breaches:
            logger.info(
                "SLA sweep complete",
                extra={"breached": result.breached, "escalated": result.escalated, "failed": result.failed}
            )
        return result

    def start(self) -> Optional[Job]:
        """
        Schedule the sweep. A second call returns the existing job.

        Returns None without scheduling when there is nobody to notify.
        """
        if not self._recipients:
            logger.warning("No escalation recipients configured, SLA monitor not started")
            return None

        if self._job is None:
            self._job = PeriodicJob(
                job_id="support_sla_sweep",
                name="Support SLA sweep",
                interval_seconds=self._interval_seconds,
                job_func=self.sweep,
            )
        return self._job.start()

    def stop(self) -> None:
        """Stop the sweep timer (safe to call even if not started)."""
        if self._job is not None:
            self._job.stop()
