"""
Ticket Interfaces Layer
=======================

Interface adapters (controllers) for the support ticket module.

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from support_desk.tickets.interfaces.controllers import router as tickets_router

__all__ = ["tickets_router"]
