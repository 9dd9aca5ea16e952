"""
SLA Monitoring Module
=====================

Bounded context for SLA breach detection and escalation.

Responsibilities:
- Find open tickets past their SLA deadline that were never escalated
- Escalate each one exactly once
- Notify the configured escalation recipients by email
"""
