"""Support ticket ingestion, canned responses and SLA escalation service."""

__version__ = "1.0.0"
