"""
Admin Session Endpoints - inspect and repair conversation sessions without DB access

1. Session statistics and state machine configuration
2. Single-session lookup and reset
3. Operator tools: replay a message, fire a system trigger (payment verified etc.)
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.services import get_conversation_service
from app.core.exceptions import SessionNotFoundError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.domain.services.conversation_service import ConversationService
from app.state_machine.machine import get_state_machine
from app.state_machine.session import ConversationSession
from app.state_machine.states import StateTrigger, SYSTEM_TRIGGERS

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])

_AUTH_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: {"description": "Missing API key"},
    403: {"description": "Wrong API key"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class SessionResponse(BaseModel):
    phone_number: str
    current_state: str
    last_activity: datetime
    customer_id: int | None
    context: dict[str, Any]
    allowed_triggers: list[str]

    @classmethod
    def from_session(cls, session: ConversationSession) -> "SessionResponse":
        return cls(
            phone_number=session.phone_number,
            current_state=session.current_state.value,
            last_activity=session.last_activity,
            customer_id=session.customer_id,
            context=session.context.model_dump(mode="json"),
            allowed_triggers=[
                t.value for t in get_state_machine().get_available_triggers(session.current_state)
            ],
        )


class SessionStatsResponse(BaseModel):
    total_sessions: int
    active_sessions: int
    sessions_by_state: dict[str, int]


class StateMachineInfoResponse(BaseModel):
    total_states: int
    total_transitions: int
    terminal_states: int
    average_transitions_per_state: float
    is_valid: bool
    errors: list[str]


class MessageRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)


class TriggerRequest(BaseModel):
    trigger: StateTrigger


class ConversationReplyResponse(BaseModel):
    response_text: str
    next_state: str | None = None
    context_delta: dict[str, Any] | None = None


def valid_phone_number(phone_number: str) -> str:
    """Path parameter dependency: reject malformed numbers, return the normalized one"""
    if not PhoneNumberValidator.validate(phone_number):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid phone number",
        )
    return PhoneNumberValidator.normalize(phone_number)


# ─── 1. Statistics ──────────────────────────────────────────────────────────

@router.get(
    "/sessions/stats",
    response_model=SessionStatsResponse,
    summary="Conversation session statistics",
    responses=_AUTH_RESPONSES,
)
async def session_stats(
    service: ConversationService = Depends(get_conversation_service),
) -> SessionStatsResponse:
    stats = await service.get_session_stats()
    return SessionStatsResponse(
        total_sessions=stats["total_sessions"],
        active_sessions=await service.get_active_sessions_count(),
        sessions_by_state=stats["sessions_by_state"],
    )


@router.get(
    "/state-machine",
    response_model=StateMachineInfoResponse,
    summary="State machine configuration summary",
    responses=_AUTH_RESPONSES,
)
async def state_machine_info() -> StateMachineInfoResponse:
    machine = get_state_machine()
    is_valid, errors = machine.validate_configuration()
    return StateMachineInfoResponse(**machine.get_stats(), is_valid=is_valid, errors=errors)


# ─── 2. Single session ──────────────────────────────────────────────────────

@router.get(
    "/sessions/{phone_number}",
    response_model=SessionResponse,
    summary="Current state and context of one conversation",
    responses={
        **_AUTH_RESPONSES,
        400: {"description": "Invalid phone number"},
        404: {"description": "No live session"},
    },
)
async def get_session(
    phone_number: str = Depends(valid_phone_number),
    service: ConversationService = Depends(get_conversation_service),
) -> SessionResponse:
    session = await service.get_session(phone_number)
    if session is None:
        raise SessionNotFoundError(PhoneNumberValidator.mask(phone_number))
    return SessionResponse.from_session(session)


@router.post(
    "/sessions/{phone_number}/reset",
    response_model=SessionResponse,
    summary="Reset a conversation to GREETING",
    description="Discards cart and payment progress. Useful for users stuck in a broken flow.",
    responses={**_AUTH_RESPONSES, 503: {"description": "Session storage unavailable"}},
)
async def reset_session(
    phone_number: str = Depends(valid_phone_number),
    service: ConversationService = Depends(get_conversation_service),
) -> SessionResponse:
    session = await service.reset_conversation(phone_number)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session storage unavailable",
        )

    logger.info(
        "Session reset by admin",
        extra_data={"phone": PhoneNumberValidator.mask(session.phone_number)}
    )
    return SessionResponse.from_session(session)


# ─── 3. Operator tools ──────────────────────────────────────────────────────

@router.post(
    "/sessions/{phone_number}/messages",
    response_model=ConversationReplyResponse,
    summary="Process a message as if the customer had sent it",
    responses=_AUTH_RESPONSES,
)
async def replay_message(
    body: MessageRequest,
    phone_number: str = Depends(valid_phone_number),
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationReplyResponse:
    reply = await service.process_message(phone_number, body.text)
    return ConversationReplyResponse(
        response_text=reply.response_text,
        next_state=reply.next_state.value if reply.next_state else None,
        context_delta=reply.context_delta,
    )


@router.post(
    "/sessions/{phone_number}/triggers",
    response_model=ConversationReplyResponse,
    summary="Fire a system trigger (payment verified, failed or timed out)",
    responses={
        **_AUTH_RESPONSES,
        400: {"description": "Invalid phone number or not a system trigger"},
        404: {"description": "No live session"},
    },
)
async def fire_trigger(
    body: TriggerRequest,
    phone_number: str = Depends(valid_phone_number),
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationReplyResponse:
    if body.trigger not in SYSTEM_TRIGGERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"'{body.trigger.value}' is not a system trigger",
        )

    reply = await service.apply_system_trigger(phone_number, body.trigger)
    if reply is None:
        raise SessionNotFoundError(PhoneNumberValidator.mask(phone_number))

    logger.info(
        "System trigger fired by admin",
        extra_data={"phone": PhoneNumberValidator.mask(phone_number), "trigger": body.trigger.value}
    )
    return ConversationReplyResponse(
        response_text=reply.response_text,
        next_state=reply.next_state.value if reply.next_state else None,
        context_delta=reply.context_delta,
    )
