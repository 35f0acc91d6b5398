"""
Chat API Endpoints.

Transport-neutral entry for caller turns. Voice, SMS, WhatsApp and web
front ends all post the caller's text here; the transport name only
changes how replies are shaped.
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, HTTPException, Header, status
from pydantic import BaseModel, Field

from app.core.agent.dispatch import DispatchResponse, get_dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Chat"])


class HistoryMessage(BaseModel):
    """One earlier turn supplied by the transport."""

    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Chat message request."""

    session_id: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Session or call identifier chosen by the transport",
        examples=["call-550e8400"],
    )
    message: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="Caller's message",
        examples=["I'd like to book a cleaning for Jane Doe on Monday morning"],
    )
    history: Optional[list[HistoryMessage]] = Field(
        default=None,
        description="Earlier turns, oldest first, used when the session has no state yet",
    )
    transport: Optional[Literal["voice", "whatsapp", "sms", "web"]] = Field(
        default=None,
        description="Channel the caller is using (default: web)",
    )


class ChatResponse(BaseModel):
    """Chat response."""

    message: str = Field(..., description="Reply to the caller")
    session_id: str = Field(..., description="Session identifier")
    phase: str = Field(..., description="Phase the turn ended in")
    handled_by: str = Field(..., description="greeting, orchestrator or error")
    handoff: bool = Field(default=False, description="A human should take over")
    pending_action: Optional[str] = Field(default=None, description="create, reschedule or cancel")
    selected_slot: Optional[dict] = Field(default=None, description="Slot the caller confirmed")
    appointment_id: Optional[str] = Field(default=None, description="Last booked appointment")
    processing_time_ms: Optional[float] = Field(default=None, description="Processing time in milliseconds")


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    detail: Optional[str] = None


@router.post(
    "/chat",
    response_model=ChatResponse,
    status_code=status.HTTP_200_OK,
    summary="Send a caller message",
    description="Run one conversation turn and return the receptionist's reply.",
    responses={
        200: {"description": "Successful response"},
        400: {"model": ErrorResponse, "description": "Invalid request"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
async def chat(
    request: ChatRequest,
    x_organization_id: str = Header(
        ...,
        alias="X-Organization-ID",
        description="Tenant (dental office) identifier",
    ),
) -> ChatResponse:
    """
    Process a caller message.

    The session_id must be preserved across requests to keep the
    conversation state.
    """
    if not x_organization_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Organization-ID header is required",
        )

    dispatcher = get_dispatcher()
    response: DispatchResponse = await dispatcher.process(
        organization_id=x_organization_id,
        session_id=request.session_id,
        message=request.message,
        history=[m.model_dump() for m in request.history] if request.history else None,
        transport=request.transport,
    )

    return ChatResponse(**response.to_dict())


@router.get(
    "/sessions/{session_id}",
    response_model=dict,
    summary="Get session state",
    description="Retrieve the current conversation state of a session.",
    responses={
        200: {"description": "Conversation state"},
        404: {"model": ErrorResponse, "description": "Session not found"},
    },
)
async def get_session(
    session_id: str,
    x_organization_id: str = Header(
        ...,
        alias="X-Organization-ID",
        description="Tenant (dental office) identifier",
    ),
) -> dict:
    """Get session state."""
    dispatcher = get_dispatcher()
    state = await dispatcher.get_session(x_organization_id, session_id)

    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )

    return state.to_dict()


@router.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="End a session",
    description="Discard a session's conversation state.",
    responses={404: {"model": ErrorResponse, "description": "Session not found"}},
)
async def end_session(
    session_id: str,
    x_organization_id: str = Header(
        ...,
        alias="X-Organization-ID",
        description="Tenant (dental office) identifier",
    ),
) -> None:
    """End a session."""
    dispatcher = get_dispatcher()
    if not await dispatcher.end_session(x_organization_id, session_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )


@router.post(
    "/admin/tenants/{organization_id}/config/invalidate",
    summary="Invalidate tenant configuration",
    description="Drop the cached agent configuration so the next turn reloads it.",
)
async def invalidate_tenant_config(organization_id: str) -> dict:
    """Invalidate a tenant's cached agent configuration."""
    dispatcher = get_dispatcher()
    invalidated = dispatcher.invalidate_tenant_config(organization_id)
    logger.info(f"Tenant config invalidated: org={organization_id} cached={invalidated}")
    return {"organization_id": organization_id, "invalidated": invalidated}
