"""Deterministic catalog delivery with resend throttling.

Resend policy for a catalog that was already delivered:
- a different catalog, an explicit "send it again" or an expired cooldown always sends;
- the same catalog inside the cooldown is blocked and counted, and the request that
  brings the count to ``resend_max_attempts`` is sent.
The decision and the counter increment happen in one transactional update.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from app.logging_config import get_logger
from app.services import audit_service
from app.services.audit_service import AuditSink
from app.services.catalog_service import MEDIA_KINDS, AssetKind, CatalogMatch, CatalogMatcher
from app.services.chat_log_service import ChatLog
from app.services.chat_state import ChatState, utcnow
from app.services.intent_service import Intent, is_resend_request
from app.services.state_machine import ConversationPhase, can_transition
from app.services.state_store import ChatStateStore
from app.services.text_utils import normalize
from app.services.whatsapp_service import MessagingProvider

logger = get_logger("catalog_dispatcher")

REASON_FIRST_SEND = "first_send"
REASON_EXPLICIT_RESEND = "explicit_resend"
REASON_DIFFERENT_CATALOG = "different_catalog"
REASON_COOLDOWN_EXPIRED = "cooldown_expired"
REASON_INSISTED = "insisted"
REASON_BLOCKED = "blocked"


@dataclass
class ResendDecision:
    allowed: bool
    reason: str
    attempts: int = 0
    elapsed_seconds: Optional[float] = None


@dataclass
class Delivery:
    text: str
    file_type: str
    file_url: Optional[str] = None
    message_id: Optional[str] = None
    used_fallback: bool = False


class CatalogDispatcher:
    def __init__(
        self,
        store: ChatStateStore,
        matcher: CatalogMatcher,
        provider: MessagingProvider,
        chat_log: ChatLog,
        audit: AuditSink,
        *,
        resend_cooldown_seconds: float = 120.0,
        resend_max_attempts: int = 3,
        send_timeout_seconds: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.matcher = matcher
        self.provider = provider
        self.chat_log = chat_log
        self.audit = audit
        self.resend_cooldown_seconds = resend_cooldown_seconds
        self.resend_max_attempts = resend_max_attempts
        self.send_timeout_seconds = send_timeout_seconds
        self.clock = clock

    async def try_send_catalog(self, phone: str, text: Optional[str]) -> bool:
        """Send the catalog the message asks for. False means nothing was sent."""
        if not phone or not normalize(text):
            return False

        state = await self.store.get(phone)
        found = await self.matcher.match(text)

        if found is None:
            if self.matcher.is_generic_catalog_request(text):
                return await self._send_catalog_list(phone)
            return False

        if is_resend_request(text):
            decision = ResendDecision(allowed=True, reason=REASON_EXPLICIT_RESEND)
        elif not state.catalog_sent:
            decision = ResendDecision(allowed=True, reason=REASON_FIRST_SEND)
        else:
            decision = await self._check_resend(phone, found)

        if not decision.allowed:
            logger.info(
                "Catalog resend blocked",
                extra={
                    "context": {
                        "phone": phone,
                        "catalog_ref": found.keyword,
                        "attempts": decision.attempts,
                        "elapsed_seconds": decision.elapsed_seconds,
                    }
                },
            )
            await self.audit.append(
                audit_service.CATALOG_RESEND_BLOCKED,
                {
                    "phone": phone,
                    "catalog_ref": found.keyword,
                    "attempts": decision.attempts,
                    "elapsed_seconds": decision.elapsed_seconds,
                    "at": self.clock(),
                },
            )
            return False

        delivery = await self._deliver(phone, found)
        await self._record_sent(phone, found, delivery, decision)
        return True

    async def _check_resend(self, phone: str, found: CatalogMatch) -> ResendDecision:
        now = self.clock()
        decision = ResendDecision(allowed=True, reason=REASON_FIRST_SEND)

        def _evaluate(current: ChatState) -> Optional[dict]:
            nonlocal decision
            if not current.catalog_sent:
                decision = ResendDecision(allowed=True, reason=REASON_FIRST_SEND)
                return None
            if current.catalog_ref not in found.entry.keywords:
                decision = ResendDecision(allowed=True, reason=REASON_DIFFERENT_CATALOG)
                return None

            elapsed = None
            if current.catalog_sent_at is not None:
                elapsed = (now - current.catalog_sent_at).total_seconds()
            if elapsed is None or elapsed >= self.resend_cooldown_seconds:
                decision = ResendDecision(allowed=True, reason=REASON_COOLDOWN_EXPIRED, elapsed_seconds=elapsed)
                return None

            attempts = current.catalog_resend_attempts + 1
            if attempts >= self.resend_max_attempts:
                decision = ResendDecision(
                    allowed=True,
                    reason=REASON_INSISTED,
                    attempts=attempts,
                    elapsed_seconds=elapsed,
                )
                return None

            decision = ResendDecision(
                allowed=False,
                reason=REASON_BLOCKED,
                attempts=attempts,
                elapsed_seconds=elapsed,
            )
            return {"catalog_resend_attempts": attempts}

        await self.store.transactional_update(phone, _evaluate)
        return decision

    async def _send(self, coro):
        return await asyncio.wait_for(coro, timeout=self.send_timeout_seconds)

    async def _deliver(self, phone: str, found: CatalogMatch) -> Delivery:
        entry = found.entry
        caption = entry.caption
        fallback_text = f"{caption}\n{entry.asset_url}".strip() if entry.asset_url else caption

        if entry.asset_kind in MEDIA_KINDS:
            try:
                message_id = await self._send(
                    self.provider.send_structured_media(phone, entry.asset_kind.value, entry.asset_url, caption)
                )
                return Delivery(
                    text=caption,
                    file_type=entry.asset_kind.value,
                    file_url=entry.asset_url,
                    message_id=message_id,
                )
            except Exception as e:
                logger.warning(
                    "Catalog media send failed, falling back to text",
                    extra={"context": {"phone": phone, "catalog_id": entry.id, "error": str(e) or type(e).__name__}},
                )
                await self.audit.append(
                    audit_service.CATALOG_SEND_FAILED,
                    {
                        "phone": phone,
                        "catalog_id": entry.id,
                        "kind": entry.asset_kind.value,
                        "error": str(e) or type(e).__name__,
                        "at": self.clock(),
                    },
                )
            # A failure of the text fallback propagates to the caller.
            message_id = await self._send(self.provider.send_message(phone, fallback_text))
            return Delivery(
                text=fallback_text,
                file_type="text",
                file_url=entry.asset_url,
                message_id=message_id,
                used_fallback=True,
            )

        text = fallback_text if entry.asset_kind == AssetKind.LINK else caption
        message_id = await self._send(self.provider.send_message(phone, text))
        return Delivery(text=text, file_type="text", file_url=entry.asset_url, message_id=message_id)

    async def _record_sent(
        self,
        phone: str,
        found: CatalogMatch,
        delivery: Delivery,
        decision: ResendDecision,
    ) -> None:
        await self.chat_log.save_outbound(
            phone,
            delivery.text,
            file_url=delivery.file_url,
            file_type=delivery.file_type,
            metadata={
                "catalog_id": found.entry.id,
                "message_id": delivery.message_id,
                "used_fallback": delivery.used_fallback,
            },
        )

        now = self.clock()
        phases: dict = {}

        def _apply(current: ChatState) -> dict:
            phases["from"] = current.conversation_phase
            patch = {
                "catalog_sent": True,
                "catalog_ref": found.keyword,
                "catalog_sent_at": now,
                "catalog_resend_attempts": 0,
                "last_intent": Intent.CATALOG.value,
                "last_change_at": now,
                "current_product": found.keyword,
            }
            if can_transition(
                current.conversation_phase,
                ConversationPhase.CATALOG_SENT,
                order_in_progress=current.order_in_progress,
            ):
                patch["conversation_phase"] = ConversationPhase.CATALOG_SENT
            return patch

        updated = await self.store.transactional_update(phone, _apply)

        if phases.get("from") is not None and phases["from"] != updated.conversation_phase:
            await self.audit.record_transition(
                phone, phases["from"], updated.conversation_phase, Intent.CATALOG.value, now
            )
        await self.audit.append(
            audit_service.CATALOG_SENT,
            {
                "phone": phone,
                "catalog_id": found.entry.id,
                "catalog_ref": found.keyword,
                "kind": found.entry.asset_kind.value,
                "reason": decision.reason,
                "used_fallback": delivery.used_fallback,
                "message_id": delivery.message_id,
                "at": now,
            },
        )
        logger.info(
            "Catalog sent",
            extra={"context": {"phone": phone, "catalog_ref": found.keyword, "reason": decision.reason}},
        )

    async def _send_catalog_list(self, phone: str) -> bool:
        message = await self.matcher.build_catalog_list_message()
        if not message:
            return False

        message_id = await self._send(self.provider.send_message(phone, message))
        await self.chat_log.save_outbound(phone, message, metadata={"catalog_list": True, "message_id": message_id})

        now = self.clock()
        phases: dict = {}

        def _apply(current: ChatState) -> dict:
            phases["from"] = current.conversation_phase
            patch = {
                "catalog_list_shown": True,
                "last_intent": Intent.CATALOG_LIST.value,
                "last_change_at": now,
            }
            if can_transition(
                current.conversation_phase,
                ConversationPhase.DISCOVERY,
                order_in_progress=current.order_in_progress,
            ):
                patch["conversation_phase"] = ConversationPhase.DISCOVERY
            return patch

        updated = await self.store.transactional_update(phone, _apply)

        if phases.get("from") is not None and phases["from"] != updated.conversation_phase:
            await self.audit.record_transition(
                phone, phases["from"], updated.conversation_phase, Intent.CATALOG_LIST.value, now
            )
        await self.audit.append(
            audit_service.CATALOG_LIST_SENT,
            {"phone": phone, "message_id": message_id, "at": now},
        )
        logger.info("Catalog list sent", extra={"context": {"phone": phone}})
        return True
