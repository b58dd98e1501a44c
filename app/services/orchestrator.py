"""Top-level handling of one inbound WhatsApp event.

Precedence: dedup, human handoff gate, persist inbound, human request,
catalog dispatch, order flow, AI agent. Each event is an independent unit
of work: an unexpected error is logged, alerted and answered with a short
apology instead of escaping to the transport.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from app.logging_config import bind_logger
from app.schemas.webhook import InboundEvent
from app.services import audit_service
from app.services.agent_service import FALLBACK_REPLY, AgentReply, AIAgent
from app.services.alert_service import alert_error
from app.services.audit_service import AuditSink
from app.services.catalog_dispatcher import CatalogDispatcher
from app.services.chat_log_service import ORIGIN_CLIENT, ChatLog
from app.services.chat_state import ChatState, utcnow
from app.services.conversation_service import ConversationStateMachine
from app.services.dedup_service import Deduplicator
from app.services.handoff_service import HandoffGate
from app.services.intent_service import Intent, is_human_request_message
from app.services.media_service import MediaStore
from app.services.state_store import ChatStateStore
from app.services.whatsapp_service import MessagingProvider

HUMAN_REQUEST_ACK = "🕐 Un asesor se pondrá en contacto contigo pronto."
TRY_AGAIN_TEXT = "Tuvimos un inconveniente procesando tu mensaje. Por favor, inténtalo de nuevo en unos minutos."


class HandleOutcome(str, Enum):
    INVALID = "invalid"
    DUPLICATE = "duplicate"
    SUPPRESSED = "suppressed_by_human"
    HANDOFF_REQUESTED = "handoff_requested"
    CATALOG = "catalog"
    ORDER_FLOW = "order_flow"
    AI = "ai"
    AI_SUPPRESSED = "ai_suppressed_by_human"
    NO_ACTION = "no_action"
    FAILED = "failed"


class ConversationOrchestrator:
    def __init__(
        self,
        *,
        store: ChatStateStore,
        deduplicator: Deduplicator,
        handoff: HandoffGate,
        chat_log: ChatLog,
        audit: AuditSink,
        dispatcher: CatalogDispatcher,
        state_machine: ConversationStateMachine,
        agent: AIAgent,
        provider: MessagingProvider,
        media_store: Optional[MediaStore] = None,
        agent_timeout_seconds: float = 60.0,
        send_timeout_seconds: float = 15.0,
        history_limit: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.deduplicator = deduplicator
        self.handoff = handoff
        self.chat_log = chat_log
        self.audit = audit
        self.dispatcher = dispatcher
        self.state_machine = state_machine
        self.agent = agent
        self.provider = provider
        self.media_store = media_store
        self.agent_timeout_seconds = agent_timeout_seconds
        self.send_timeout_seconds = send_timeout_seconds
        self.history_limit = history_limit
        self.clock = clock

    async def handle(self, event: InboundEvent) -> HandleOutcome:
        log = bind_logger("orchestrator", phone=event.phone, message_id=event.message_id)
        try:
            return await self._handle(event, log)
        except Exception as e:
            log.error("Inbound processing failed", exc_info=True, context={"error": str(e)})
            await self.audit.append(
                audit_service.PROCESSING_FAILED,
                {"phone": event.phone, "message_id": event.message_id, "error": str(e), "at": self.clock()},
            )
            await alert_error(
                "Inbound processing failed",
                {"phone": event.phone, "message_id": event.message_id, "error": str(e)[:200]},
            )
            await self._send_apology(event.phone, log)
            return HandleOutcome.FAILED

    async def _handle(self, event: InboundEvent, log) -> HandleOutcome:
        phone = (event.phone or "").strip()
        if not phone:
            log.warning("Inbound event without phone ignored")
            return HandleOutcome.INVALID

        if await self.deduplicator.should_skip(phone, event.message_id):
            return HandleOutcome.DUPLICATE

        await self.store.merge(phone, {"last_contact_at": self.clock()})
        text = (event.body or "").strip()

        if await self.handoff.is_active(phone):
            await self._persist_inbound(phone, event, text, log)
            log.info("Bot output suppressed: human mode active")
            await self.audit.append(
                audit_service.SEND_SUPPRESSED_BY_HUMAN,
                {"phone": phone, "message_id": event.message_id, "stage": "inbound", "at": self.clock()},
            )
            return HandleOutcome.SUPPRESSED

        await self._persist_inbound(phone, event, text, log)

        if is_human_request_message(text):
            await self._send_bot_text(phone, HUMAN_REQUEST_ACK, Intent.HUMAN_REQUEST)
            await self.handoff.enable(phone, reason="user_request", metadata={"status": "pending"})
            log.info("Human operator requested")
            return HandleOutcome.HANDOFF_REQUESTED

        if text and await self.dispatcher.try_send_catalog(phone, text):
            return HandleOutcome.CATALOG

        flow = await self.state_machine.run(phone, text)
        if flow.handled:
            return HandleOutcome.ORDER_FLOW
        if not text and event.type == "text":
            return HandleOutcome.NO_ACTION

        return await self._reply_with_agent(phone, text or self._describe_attachment(event), log)

    async def _persist_inbound(self, phone: str, event: InboundEvent, text: str, log) -> None:
        file_url = None
        if event.type != "text" and event.media_ref is not None and self.media_store is not None:
            try:
                file_url = await self.media_store.upload(
                    event.media_ref.id,
                    mime_hint=event.media_ref.mime_type,
                    filename=event.media_ref.filename,
                    media_type=event.type,
                )
            except Exception as e:
                log.warning("Inbound media upload failed", context={"error": str(e)})
                await self.audit.append(
                    audit_service.MEDIA_UPLOAD_FAILED,
                    {"phone": phone, "media_id": event.media_ref.id, "error": str(e), "at": self.clock()},
                )
        await self.chat_log.save_inbound(
            phone,
            text,
            file_url=file_url,
            file_type=event.type,
            metadata={"message_id": event.message_id, "contact_name": event.contact_name},
        )

    @staticmethod
    def _describe_attachment(event: InboundEvent) -> str:
        return f"(El cliente envió un archivo de tipo {event.type} sin texto)"

    async def _send_bot_text(self, phone: str, text: str, intent: Intent) -> Optional[str]:
        message_id = await asyncio.wait_for(
            self.provider.send_message(phone, text),
            timeout=self.send_timeout_seconds,
        )
        await self.chat_log.save_outbound(phone, text, metadata={"intent": intent.value, "message_id": message_id})
        return message_id

    async def _ask_agent(self, phone: str, text: str, log) -> AgentReply:
        history = await self.chat_log.recent(phone, limit=self.history_limit)
        if history and history[-1].origin == ORIGIN_CLIENT and (history[-1].text or "") == text:
            history = history[:-1]
        try:
            reply = await asyncio.wait_for(
                self.agent.respond(phone, text, history),
                timeout=self.agent_timeout_seconds,
            )
        except asyncio.TimeoutError:
            log.warning("AI agent timed out", context={"timeout_seconds": self.agent_timeout_seconds})
            reply = AgentReply(
                text=FALLBACK_REPLY,
                used_fallback=True,
                error="timeout",
                latency_ms=int(self.agent_timeout_seconds * 1000),
            )
        except Exception as e:
            log.error("AI agent failed", exc_info=True, context={"error": str(e)})
            reply = AgentReply(text=FALLBACK_REPLY, used_fallback=True, error=str(e))
        if not (reply.text or "").strip():
            reply.text = FALLBACK_REPLY
            reply.used_fallback = True
        return reply

    async def _reply_with_agent(self, phone: str, text: str, log) -> HandleOutcome:
        reply = await self._ask_agent(phone, text, log)
        suppressed = False

        def _bookkeeping(current: ChatState) -> Optional[dict]:
            nonlocal suppressed
            if current.human_mode:
                # An operator took over while the agent was thinking.
                suppressed = True
                return None
            return {
                "human_mode": False,
                "last_ai_latency_ms": reply.latency_ms,
                "last_ai_used_fallback": reply.used_fallback,
                "last_ai_error": reply.error,
            }

        await self.store.transactional_update(phone, _bookkeeping)
        if suppressed:
            log.info("AI reply suppressed: human mode active")
            await self.audit.append(
                audit_service.SEND_SUPPRESSED_BY_HUMAN,
                {"phone": phone, "stage": "ai_reply", "at": self.clock()},
            )
            return HandleOutcome.AI_SUPPRESSED

        message_id = await asyncio.wait_for(
            self.provider.send_message(phone, reply.text),
            timeout=self.send_timeout_seconds,
        )
        await self.chat_log.save_outbound(
            phone,
            reply.text,
            metadata={
                "intent": Intent.AI_REPLY.value,
                "message_id": message_id,
                "used_fallback": reply.used_fallback,
                "tool_calls": reply.tool_calls,
            },
        )
        log.info(
            "AI reply sent",
            context={"latency_ms": reply.latency_ms, "used_fallback": reply.used_fallback},
        )
        return HandleOutcome.AI

    async def _send_apology(self, phone: Optional[str], log) -> None:
        if not phone:
            return
        try:
            if await self.handoff.is_active(phone):
                return
            await asyncio.wait_for(
                self.provider.send_message(phone, TRY_AGAIN_TEXT),
                timeout=self.send_timeout_seconds,
            )
        except Exception as e:
            log.warning("Apology message not delivered", context={"error": str(e)})
