"""Operator panel: take over a chat, answer as a human, hand it back to the bot."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from app.config import settings
from app.dependencies import Services, get_handoff_gate, get_services
from app.logging_config import get_logger
from app.schemas.panel import (
    ChatHistoryResponse,
    ChatMessageOut,
    ChatStatusResponse,
    OperatorMessageRequest,
    OperatorPayload,
    PanelResponse,
    ReleaseRequest,
    TakeoverRequest,
)
from app.services import audit_service
from app.services.chat_state import state_to_dict, utcnow
from app.services.handoff_service import HandoffGate, OperatorInfo

logger = get_logger("panel")

router = APIRouter(prefix="/panel")

ERROR_STATUS = {
    "invalid_phone": status.HTTP_400_BAD_REQUEST,
    "empty_message": status.HTTP_400_BAD_REQUEST,
    "not_in_human_mode": status.HTTP_409_CONFLICT,
    "provider_not_ready": status.HTTP_503_SERVICE_UNAVAILABLE,
    "send_failed": status.HTTP_502_BAD_GATEWAY,
}


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.panel_admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="PANEL_ADMIN_TOKEN not configured",
        )
    if not provided or provided != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


def require_panel_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    _require_admin_token(x_admin_token)


def _operator(payload: Optional[OperatorPayload]) -> Optional[OperatorInfo]:
    if payload is None:
        return None
    return OperatorInfo(id=payload.id, name=payload.name)


def _raise_for_failure(result) -> None:
    if result.ok:
        return
    code = ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=code, detail=result.error_detail())


@router.post("/takeover/{phone}", response_model=PanelResponse, dependencies=[Depends(require_panel_token)])
async def takeover(
    phone: str,
    request: Optional[TakeoverRequest] = None,
    handoff: HandoffGate = Depends(get_handoff_gate),
):
    request = request or TakeoverRequest()
    result = await handoff.enable(
        phone,
        operator=_operator(request.operator),
        reason=request.reason or "operator_takeover",
        metadata=request.metadata,
    )
    _raise_for_failure(result)
    return PanelResponse(success=True, message="Human mode enabled", data={"phone": phone})


@router.post("/release/{phone}", response_model=PanelResponse, dependencies=[Depends(require_panel_token)])
async def release(
    phone: str,
    request: Optional[ReleaseRequest] = None,
    handoff: HandoffGate = Depends(get_handoff_gate),
):
    request = request or ReleaseRequest()
    result = await handoff.disable(phone, operator=_operator(request.operator), reason=request.reason)
    _raise_for_failure(result)
    return PanelResponse(success=True, message="Human mode disabled", data={"phone": phone})


@router.post("/send", response_model=PanelResponse, dependencies=[Depends(require_panel_token)])
async def send_operator_message(
    request: OperatorMessageRequest,
    handoff: HandoffGate = Depends(get_handoff_gate),
):
    result = await handoff.operator_reply(
        request.phone,
        message=request.message,
        media_url=request.media_url,
        media_type=request.media_type,
        operator=_operator(request.operator),
    )
    _raise_for_failure(result)
    return PanelResponse(success=True, message="Message sent", data=result.value)


@router.get("/status/{phone}", response_model=ChatStatusResponse, dependencies=[Depends(require_panel_token)])
async def chat_status(phone: str, services: Services = Depends(get_services)):
    state = await services.store.get(phone)
    document = await services.store.snapshot(phone)
    return ChatStatusResponse(phone=phone, state=state_to_dict(state), document=document)


@router.get("/messages/{phone}", response_model=ChatHistoryResponse, dependencies=[Depends(require_panel_token)])
async def chat_messages(phone: str, limit: int = 50, services: Services = Depends(get_services)):
    limit = max(1, min(limit, 500))
    messages = await services.chat_log.recent(phone, limit=limit)
    return ChatHistoryResponse(
        phone=phone,
        messages=[
            ChatMessageOut(
                origin=item.origin,
                text=item.text,
                file_url=item.file_url,
                file_type=item.file_type or "text",
                created_at=item.created_at,
            )
            for item in messages
        ],
    )


@router.post("/reset/{phone}", response_model=PanelResponse, dependencies=[Depends(require_panel_token)])
async def reset_chat(phone: str, services: Services = Depends(get_services)):
    """Start the conversation over, including chats that reached CLOSING."""
    state = await services.store.reset(phone)
    await services.audit.append(audit_service.STATE_RESET, {"phone": phone, "at": utcnow()})
    logger.info("Chat state reset", extra={"context": {"phone": phone}})
    return PanelResponse(success=True, message="State reset", data=state_to_dict(state))
