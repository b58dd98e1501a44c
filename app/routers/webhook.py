from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import FileResponse, PlainTextResponse
from pydantic import ValidationError

from app.config import settings
from app.dependencies import get_orchestrator
from app.logging_config import get_logger
from app.schemas.webhook import InboundEvent, WebhookResponse
from app.services.media_service import normalize_media_path, verify_signed_media_path
from app.services.orchestrator import ConversationOrchestrator

logger = get_logger("webhook")

router = APIRouter()

MEDIA_MESSAGE_TYPES = ("image", "audio", "video", "document")


def _interactive_text(message: dict) -> Optional[str]:
    interactive = message.get("interactive") or {}
    for key in ("button_reply", "list_reply"):
        reply = interactive.get(key)
        if isinstance(reply, dict) and reply.get("title"):
            return reply["title"]
    button = message.get("button") or {}
    return button.get("text")


def _meta_message_to_event(message: dict, contact_names: dict) -> Optional[InboundEvent]:
    sender = message.get("from")
    if not sender:
        return None

    raw_type = message.get("type") or "text"
    body = None
    media_ref = None
    event_type = "text"

    if raw_type == "text":
        body = (message.get("text") or {}).get("body")
    elif raw_type in MEDIA_MESSAGE_TYPES:
        media = message.get(raw_type) or {}
        event_type = raw_type
        body = media.get("caption")
        if media.get("id"):
            media_ref = {"id": media["id"], "mimeType": media.get("mime_type"), "filename": media.get("filename")}
    elif raw_type in ("interactive", "button"):
        body = _interactive_text(message)
    else:
        logger.info("Unsupported Meta message type ignored", extra={"context": {"type": raw_type}})
        return None

    return InboundEvent.model_validate(
        {
            "from": sender,
            "messageId": message.get("id"),
            "type": event_type,
            "body": body,
            "mediaRef": media_ref,
            "contactName": contact_names.get(sender),
        }
    )


def extract_meta_events(payload: dict) -> List[InboundEvent]:
    """Flatten a Meta Cloud API webhook payload into inbound events. Status callbacks are skipped."""
    events: List[InboundEvent] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            contact_names = {
                contact.get("wa_id"): (contact.get("profile") or {}).get("name")
                for contact in value.get("contacts") or []
                if contact.get("wa_id")
            }
            for message in value.get("messages") or []:
                event = _meta_message_to_event(message, contact_names)
                if event is not None:
                    events.append(event)
    return events


@router.get("/webhook")
async def verify_webhook(
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
):
    """Meta subscription handshake."""
    expected = settings.whatsapp_verify_token
    if mode == "subscribe" and expected and verify_token == expected:
        return PlainTextResponse(challenge or "")
    logger.warning("Webhook verification rejected", extra={"context": {"mode": mode}})
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(
    request: Request,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Meta Cloud API webhook. Always answers 200 once the body parses so Meta does not retry."""
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    try:
        events = extract_meta_events(payload)
    except ValidationError as e:
        logger.warning("Malformed Meta payload", extra={"context": {"error": str(e)}})
        return WebhookResponse(success=False, message="Malformed payload")

    if not events:
        return WebhookResponse(success=True, message="No messages")

    outcomes = []
    for event in events:
        outcome = await orchestrator.handle(event)
        outcomes.append(outcome.value)
    return WebhookResponse(success=True, message="Processed", processed=len(events), outcomes=outcomes)


@router.post("/webhook/events", response_model=WebhookResponse)
async def handle_event(
    event: InboundEvent,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Provider-neutral inbound event, used by relays and tests."""
    outcome = await orchestrator.handle(event)
    return WebhookResponse(success=True, message="Processed", processed=1, outcomes=[outcome.value])


@router.get("/media/{media_path:path}")
async def serve_media(media_path: str, expires: int, sig: str):
    """Serve locally stored media via signed URLs."""
    normalized_path = normalize_media_path(media_path)
    if not normalized_path:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing media path")
    if not verify_signed_media_path(normalized_path, expires, sig, settings.media_signing_secret):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired signature")

    base_dir = Path(settings.media_storage_dir).resolve()
    target_path = (base_dir / normalized_path).resolve()
    if base_dir not in target_path.parents:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid media path")
    if not target_path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")

    return FileResponse(target_path)
