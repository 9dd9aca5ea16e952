"""
Support Desk - Main Application
===============================

Support ticket ingestion, canned responses and SLA escalation.

Modules:
- Tickets: inbox polling, in-app submission, lifecycle, automated replies
- SLA Monitoring: periodic breach sweep and escalation emails

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, mail API, IMAP, template file
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from support_desk.config import Settings, get_settings
from support_desk.infrastructure.database import Database
from support_desk.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    install_exception_handlers,
)
from support_desk.shared.infrastructure.logging import get_logger, setup_logging
from support_desk.sla.application import SLAMonitor
from support_desk.tickets.application import (
    AutomatedResponder,
    DedupLedger,
    InboxConfig,
    ISupportStore,
    MailSourceAdapter,
    TicketLifecycleService,
)
from support_desk.tickets.infrastructure import (
    HttpMailSender,
    ImapMailbox,
    InMemorySupportStore,
    ResponseTemplateManager,
    SQLAlchemySupportStore,
)
from support_desk.tickets.interfaces import tickets_router

logger = get_logger(__name__)


@dataclass
class SupportServices:
    """Everything the running service owns; built once per process."""
    settings: Settings
    store: ISupportStore
    ledger: DedupLedger
    responder: AutomatedResponder
    lifecycle: TicketLifecycleService
    monitor: SLAMonitor
    inbox: MailSourceAdapter
    mail_sender: Optional[HttpMailSender] = None
    templates: Optional[ResponseTemplateManager] = None
    database: Optional[Database] = None

    def start(self) -> None:
        """Start the file watcher and both background jobs."""
        if self.templates is not None:
            self.templates.start_watching()

        if self.settings.support_sla_monitor_enabled:
            self.monitor.start()
        else:
            logger.info("SLA monitor disabled")

        self.inbox.start()

    async def close(self) -> None:
        self.inbox.stop()
        self.monitor.stop()
        if self.templates is not None:
            self.templates.stop_watching()
        if self.mail_sender is not None:
            await self.mail_sender.close()
        if self.database is not None:
            await self.database.dispose()


async def _open_database(settings: Settings) -> Optional[Database]:
    database = Database(
        settings.database_url,
        echo=settings.debug,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    try:
        # Development convenience; production should use migrations
        await database.create_tables()
    except (SQLAlchemyError, OSError) as e:
        logger.error(
            "Database unavailable, falling back to the in-memory support store",
            extra={"error": str(e), "error_type": type(e).__name__}
        )
        await database.dispose()
        return None
    return database


async def build_services(settings: Settings) -> SupportServices:
    """
    Wire the object graph from settings.

    Without ``database_url`` everything runs on the in-memory store and the
    dedup ledger is cache-only. The same happens when the database cannot
    be reached at startup.
    """
    database = await _open_database(settings) if settings.database_url else None
    if database is not None:
        store = SQLAlchemySupportStore(database.session_maker)
        ledger = DedupLedger(store)
    else:
        if not settings.database_url:
            logger.warning("DATABASE_URL not set, using the in-memory support store")
        store = InMemorySupportStore()
        ledger = DedupLedger()

    templates = ResponseTemplateManager()
    templates.load(settings.response_templates_path)

    mail_sender = HttpMailSender(
        api_url=settings.mail_api_url,
        api_key=settings.mail_api_key,
        from_email=settings.mail_from,
        timeout=settings.mail_timeout_seconds,
    )

    responder = AutomatedResponder(
        store,
        mail_sender,
        templates=templates,
        subject_tag=settings.support_subject_tag,
        sla_minutes=settings.support_sla_minutes,
    )
    lifecycle = TicketLifecycleService(
        store, ledger, responder, sla_minutes=settings.support_sla_minutes
    )
    monitor = SLAMonitor(
        lifecycle,
        responder,
        settings.escalation_recipients,
        interval_seconds=settings.support_sla_check_interval,
    )

    inbox_config = InboxConfig.from_settings(settings)
    inbox = MailSourceAdapter(inbox_config, lifecycle, lambda: ImapMailbox(inbox_config))

    return SupportServices(
        settings=settings,
        store=store,
        ledger=ledger,
        responder=responder,
        lifecycle=lifecycle,
        monitor=monitor,
        inbox=inbox,
        mail_sender=mail_sender,
        templates=templates,
        database=database,
    )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[SupportServices] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Pass ``services`` to run the API over an already wired graph (tests);
    background jobs are then left to the caller.
    """
    settings = settings or (services.settings if services else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """
        Application lifespan manager.

        STARTUP:
        1. Setup structured logging
        2. Build stores, mail sender, templates and services
        3. Start template watcher, SLA monitor and inbox poller

        SHUTDOWN:
        1. Stop background jobs and the template watcher
        2. Close the mail client and database connections
        """
        owned = services is None
        if owned:
            setup_logging(settings.log_level, settings.environment)
            logger.info("Starting Support Desk", extra={
                "version": settings.app_version,
                "environment": settings.environment
            })
            app.state.services = await build_services(settings)
            app.state.services.start()
        else:
            app.state.services = services

        logger.info("Support Desk started successfully")

        yield

        if owned:
            logger.info("Shutting down Support Desk")
            await app.state.services.close()
            logger.info("Support Desk shutdown complete")

    app = FastAPI(
        title="Support Desk API",
        description="""
        ## Support ticket ingestion and SLA escalation

        **Endpoints:**
        - `POST /support/tickets` - Submit a ticket from the app
        - `GET /support/tickets/{id}` - Ticket with its message thread
        - `POST /support/tickets/{id}/messages` - Reply on a ticket

        Tickets also arrive through the support inbox; replies quoting
        `Ticket #N` in the subject are threaded onto the existing ticket.
        """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    if services is not None:
        app.state.services = services

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    install_exception_handlers(app)

    app.include_router(tickets_router)

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """
        Health check endpoint for load balancers and orchestrators.

        Reports which store backs the service and whether the background
        jobs are scheduled.
        """
        current: Optional[SupportServices] = getattr(request.app.state, "services", None)
        checks = {"store": "initializing", "sla_monitor": "stopped", "inbox_poller": "stopped"}
        if current is not None:
            checks["store"] = "database" if current.database is not None else "in_memory"
            checks["dedup_ledger"] = "durable" if current.ledger.is_durable else "cache_only"
            if current.monitor.job is not None:
                checks["sla_monitor"] = "running"
            if current.inbox.is_scheduled:
                checks["inbox_poller"] = "running"

        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "checks": checks,
        }

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "architecture": "Clean Architecture / Modular Monolith",
            "docs": "/docs",
            "health": "/health",
        }

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "support_desk.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
