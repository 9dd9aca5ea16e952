"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="support-desk", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: Optional[str] = Field(
        default=None,
        description="Async SQLAlchemy URL; unset runs on the in-process fallback store"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Support Tickets ==========
    support_email: str = Field(
        default="support@example.com",
        description="Support mailbox address, also the fallback escalation recipient"
    )
    support_subject_tag: str = Field(
        default="Support",
        description="Tag placed in outbound subjects, e.g. [Support – Ticket #7]"
    )
    support_sla_minutes: int = Field(
        default=120,
        description="Minutes after creation before an open ticket breaches its SLA",
        ge=1
    )
    support_sla_check_interval: int = Field(
        default=300,
        description="Seconds between SLA sweeps",
        ge=1
    )
    support_sla_monitor_enabled: bool = Field(
        default=True,
        description="Run the periodic SLA sweep"
    )
    support_escalation_emails: str = Field(
        default="",
        description="Comma-separated escalation recipients"
    )

    # ========== Support Inbox (IMAP) ==========
    support_inbox_enabled: bool = Field(default=False, description="Poll the support inbox")
    support_inbox_host: str = Field(default="", description="IMAP host")
    support_inbox_port: int = Field(default=993, description="IMAP port", ge=1, le=65535)
    support_inbox_secure: bool = Field(default=True, description="Use IMAP over TLS")
    support_inbox_username: str = Field(default="", description="IMAP username")
    support_inbox_password: Optional[str] = Field(default=None, description="IMAP password")
    support_inbox_folder: str = Field(default="INBOX", description="Folder to poll")
    support_inbox_poll_interval: int = Field(
        default=120,
        description="Seconds between inbox polls",
        ge=5
    )

    # ========== Outbound Mail ==========
    mail_api_url: str = Field(
        default="https://api.resend.com/emails",
        description="Transactional mail API endpoint"
    )
    mail_api_key: Optional[str] = Field(default=None, description="Transactional mail API key")
    mail_from: str = Field(default="Support <support@example.com>", description="From header")
    mail_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for mail API calls",
        ge=0.1,
        le=60
    )

    # ========== Canned Responses ==========
    response_templates_path: Path = Field(
        default=Path("response_templates.yaml"),
        description="Optional YAML file overriding canned response templates"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.upper()

    @property
    def escalation_recipients(self) -> List[str]:
        """Escalation recipients, falling back to the support mailbox."""
        raw = self.support_escalation_emails or self.support_email
        return [email.strip() for email in raw.split(",") if email.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class TicketStatus(str, Enum):
    """Ticket lifecycle statuses."""
    OPEN = "open"
    CLOSED = "closed"


class TicketCategory(str, Enum):
    """Closed set of categories assigned to inbound requests."""
    PASSWORD_RESET = "password_reset"
    VERIFICATION = "verification"
    OTP_ISSUE = "otp_issue"
    PAYMENT_ISSUE = "payment_issue"
    PROFILE_ISSUE = "profile_issue"
    LOGIN_ISSUE = "login_issue"
    GENERAL = "general"


class SenderRole(str, Enum):
    """Who wrote a ticket message."""
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class TicketSource(str, Enum):
    """Channel a ticket was opened through."""
    EMAIL = "email"
    IN_APP = "in_app"


class MailTemplate:
    """Template identifiers attached to outbound mail."""
    ACKNOWLEDGED = "support_acknowledged"
    AUTO_RESPONSE = "support_auto_response"
    ESCALATION = "support_escalation"


DEFAULT_PRIORITY = "standard"
