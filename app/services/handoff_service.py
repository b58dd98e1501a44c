"""Human handoff: while an operator owns a conversation the bot stays silent."""

from dataclasses import dataclass
from typing import Optional

from app.logging_config import get_logger
from app.services import audit_service
from app.services.audit_service import AuditSink
from app.services.chat_log_service import ORIGIN_OPERATOR, ChatLog
from app.services.chat_state import utcnow
from app.services.result import Result
from app.services.state_store import ChatStateStore
from app.services.whatsapp_service import (
    STRUCTURED_MEDIA_KINDS,
    MessagingProvider,
    ProviderError,
    ProviderNotConfiguredError,
)

logger = get_logger("handoff_service")


@dataclass
class OperatorInfo:
    id: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}


class HandoffGate:
    def __init__(
        self,
        store: ChatStateStore,
        audit: AuditSink,
        chat_log: ChatLog,
        provider: Optional[MessagingProvider] = None,
    ):
        self.store = store
        self.audit = audit
        self.chat_log = chat_log
        self.provider = provider

    async def is_active(self, phone: str) -> bool:
        state = await self.store.get(phone)
        return state.human_mode

    async def enable(
        self,
        phone: str,
        operator: Optional[OperatorInfo] = None,
        reason: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Result[dict]:
        if not phone:
            return Result.failure("phone is required", "invalid_phone")

        now = utcnow()
        handoff = {"enabled_at": now, "updated_at": now}
        if operator is not None:
            handoff["operator"] = operator.to_dict()
        if reason:
            handoff["reason"] = reason
        if metadata:
            handoff["metadata"] = metadata

        await self.store.merge(phone, {"human_mode": True, "handoff": handoff})
        await self.audit.append(
            audit_service.HANDOFF_ENABLED,
            {"phone": phone, "reason": reason, "operator": operator.to_dict() if operator else None, "at": now},
        )
        logger.info("Human mode enabled", extra={"context": {"phone": phone, "reason": reason}})
        return Result.success(handoff)

    async def disable(
        self,
        phone: str,
        operator: Optional[OperatorInfo] = None,
        reason: Optional[str] = None,
    ) -> Result[dict]:
        if not phone:
            return Result.failure("phone is required", "invalid_phone")

        now = utcnow()
        handoff = {"disabled_at": now, "updated_at": now}
        if operator is not None:
            handoff["operator"] = operator.to_dict()
        if reason:
            handoff["release_reason"] = reason

        await self.store.merge(phone, {"human_mode": False, "handoff": handoff})
        await self.audit.append(
            audit_service.HANDOFF_DISABLED,
            {"phone": phone, "reason": reason, "operator": operator.to_dict() if operator else None, "at": now},
        )
        logger.info("Human mode disabled", extra={"context": {"phone": phone, "reason": reason}})
        return Result.success(handoff)

    async def operator_reply(
        self,
        phone: str,
        message: Optional[str] = None,
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
        operator: Optional[OperatorInfo] = None,
    ) -> Result[dict]:
        """Deliver an operator message. Only allowed while the operator owns the conversation."""
        if not phone:
            return Result.failure("phone is required", "invalid_phone")
        if not message and not media_url:
            return Result.failure("message or media_url is required", "empty_message")
        if self.provider is None:
            return Result.failure("Messaging provider not configured", "provider_not_ready")

        state = await self.store.get(phone)
        if not state.human_mode:
            return Result.failure("Conversation is not in human mode", "not_in_human_mode")

        kind = (media_type or "").strip().lower()
        try:
            if media_url and kind in STRUCTURED_MEDIA_KINDS:
                message_id = await self.provider.send_structured_media(phone, kind, media_url, message)
            elif media_url:
                text = f"{message}\n{media_url}" if message else media_url
                message_id = await self.provider.send_message(phone, text)
            else:
                message_id = await self.provider.send_message(phone, message)
        except ProviderNotConfiguredError as e:
            return Result.failure(str(e), "provider_not_ready")
        except ProviderError as e:
            logger.error("Operator reply failed", extra={"context": {"phone": phone, "error": str(e)}})
            return Result.failure(str(e), "send_failed")

        operator_payload = (operator or OperatorInfo()).to_dict()
        now = utcnow()
        entry = {
            "phone": phone,
            "text": message or "",
            "file_url": media_url,
            "file_type": (kind or "file") if media_url else "text",
            "operator": operator_payload,
            "message_id": message_id,
        }
        await self.chat_log.save_outbound(
            phone,
            message or "",
            origin=ORIGIN_OPERATOR,
            file_url=media_url,
            file_type=entry["file_type"],
            metadata={"operator": operator_payload, "message_id": message_id},
        )
        await self.store.merge(
            phone,
            {
                "human_mode": True,
                "last_operator_reply_at": now,
                "handoff": {"operator": operator_payload, "updated_at": now},
            },
        )
        await self.audit.append(audit_service.OPERATOR_MESSAGES, {**entry, "at": now})
        return Result.success(entry)
