"""
Shared Kernel Module
====================

This module contains shared infrastructure used across both bounded
contexts (Tickets and SLA Monitoring).

Architecture Pattern: Modular Monolith
- Each module (tickets, sla) is a bounded context
- Shared kernel contains only generic infrastructure

DO NOT add ticket or SLA business logic to the shared kernel.
"""

__version__ = "1.0.0"
