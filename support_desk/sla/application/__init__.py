"""
SLA Application Layer
=====================

Contains:
- SLAMonitor: periodic breach sweep and escalation
- SweepResult: counts from one sweep
"""

from support_desk.sla.application.services import SLAMonitor, SweepResult

__all__ = ["SLAMonitor", "SweepResult"]
