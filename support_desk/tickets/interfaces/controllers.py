"""
Ticket Controllers (API Routes)
===============================

FastAPI routes for in-app support tickets.

Controllers are thin - they delegate to the lifecycle service held on
``app.state.services``.
"""

from fastapi import APIRouter, Depends, Request, status

from support_desk.config import SenderRole
from support_desk.shared.infrastructure.logging import get_logger
from support_desk.tickets.application import (
    TicketDetailResponse,
    TicketLifecycleService,
    TicketMessageResponse,
    TicketReplyRequest,
    TicketResponse,
    TicketSubmitRequest,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/support", tags=["Support Tickets"])


# ========== Example payloads for Swagger ==========

TICKET_SUBMIT_EXAMPLE = {
    "email": "jane@example.com",
    "subject": "Cannot sign in",
    "description": "Login fails with an unknown error since this morning.",
}


# ========== Dependencies ==========

def get_lifecycle_service(request: Request) -> TicketLifecycleService:
    """Lifecycle service built at startup."""
    return request.app.state.services.lifecycle


# ========== Route Handlers ==========

@router.post(
    "/tickets",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a support ticket",
    description="""
    Open a ticket from the application.

    The category is detected from the subject and description unless one is
    supplied. The requester receives the canned response for the category
    (when one exists) and an acknowledgement with the ticket number.
    """,
    openapi_extra={
        "requestBody": {"content": {"application/json": {"example": TICKET_SUBMIT_EXAMPLE}}}
    },
)
async def submit_ticket(
    payload: TicketSubmitRequest,
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
):
    ticket = await lifecycle.submit_ticket(
        email=payload.email,
        subject=payload.subject,
        description=payload.description,
        category=payload.category,
        user_id=payload.user_id,
    )
    return TicketResponse.from_domain(ticket)


@router.get(
    "/tickets/{ticket_id}",
    response_model=TicketDetailResponse,
    summary="Get a ticket with its messages",
)
async def get_ticket(
    ticket_id: int,
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
):
    ticket, messages = await lifecycle.get_ticket_with_messages(ticket_id)
    return TicketDetailResponse(
        **TicketResponse.from_domain(ticket).model_dump(),
        messages=[TicketMessageResponse.from_domain(m) for m in messages],
    )


@router.post(
    "/tickets/{ticket_id}/messages",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Reply on a ticket",
    description="Append a requester reply. A reply on a closed ticket reopens it.",
)
async def add_reply(
    ticket_id: int,
    payload: TicketReplyRequest,
    lifecycle: TicketLifecycleService = Depends(get_lifecycle_service),
):
    ticket = await lifecycle.add_reply(ticket_id, payload.body, SenderRole.USER)
    return TicketResponse.from_domain(ticket)
