"""Order flow: greeting, order summary, confirmation and closing."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from app.logging_config import get_logger
from app.services.audit_service import AuditSink
from app.services.chat_log_service import ChatLog
from app.services.chat_state import ChatFlags, ChatState, should_throttle_intent, utcnow
from app.services.intent_service import (
    Intent,
    OrderDetails,
    detect_order_details,
    detect_product,
    extract_customer_name,
    is_negative_confirmation,
    is_positive_confirmation,
)
from app.services.state_machine import ConversationPhase, can_transition, is_terminal
from app.services.state_store import ChatStateStore
from app.services.whatsapp_service import MessagingProvider

logger = get_logger("conversation_service")

GREETING_TEXT = "¡Hola! Soy tu asistente de Mimétisa. ¿En qué puedo ayudarte hoy?"
CLOSING_TEXT = "Perfecto, procederemos con tu pedido. Te contactaremos a la brevedad para los siguientes pasos."
CHANGES_TEXT = "Entendido. Indícame los cambios y ajustamos tu pedido sin problema."
DEFAULT_PRODUCT = "producto"

Transition = Tuple[ConversationPhase, ConversationPhase, str]


def build_order_summary(product: Optional[str], details: OrderDetails) -> str:
    parts = [f"Producto: {(product or DEFAULT_PRODUCT).capitalize()}"]
    if details.quantity:
        parts.append(f"Cantidad: {details.quantity}")
    if details.size:
        parts.append(f"Talla: {details.size}")
    if details.color:
        parts.append(f"Color: {details.color}")
    if details.mentions_price:
        parts.append("Incluye solicitud de precio.")
    return "Tengo el siguiente resumen de tu pedido:\n- " + "\n- ".join(parts) + "\n¿Confirmas que es correcto?"


@dataclass
class FlowOutcome:
    replies: List[str] = field(default_factory=list)
    intents: List[str] = field(default_factory=list)
    transitions: List[Transition] = field(default_factory=list)
    phase: ConversationPhase = ConversationPhase.GREETING
    throttled: List[str] = field(default_factory=list)

    @property
    def handled(self) -> bool:
        return bool(self.replies)


class ConversationStateMachine:
    """Drives the order conversation for one inbound message.

    A reply tagged with an intent is skipped when the same intent was used
    less than ``throttle_seconds`` ago; a skipped reply changes nothing.
    The resulting patch is written in one transactional update that
    re-checks the phase move against the freshly read state.
    """

    def __init__(
        self,
        store: ChatStateStore,
        provider: MessagingProvider,
        chat_log: ChatLog,
        audit: AuditSink,
        *,
        throttle_seconds: float = 90.0,
        send_timeout_seconds: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.provider = provider
        self.chat_log = chat_log
        self.audit = audit
        self.throttle_seconds = throttle_seconds
        self.send_timeout_seconds = send_timeout_seconds
        self.clock = clock

    async def run(self, phone: str, text: Optional[str]) -> FlowOutcome:
        now = self.clock()
        state = await self.store.get(phone)
        text = (text or "").strip()

        outcome = FlowOutcome(phase=state.conversation_phase)
        patch: dict = {}
        flags = ChatFlags(greeted=state.flags.greeted, name_captured=state.flags.name_captured)
        order_in_progress = state.order_in_progress
        current_product = state.current_product

        async def reply(message: str, intent: Intent) -> bool:
            if should_throttle_intent(state, intent.value, now, self.throttle_seconds):
                logger.info(
                    "Reply throttled",
                    extra={"context": {"phone": phone, "intent": intent.value}},
                )
                outcome.throttled.append(intent.value)
                return False
            message_id = await asyncio.wait_for(
                self.provider.send_message(phone, message),
                timeout=self.send_timeout_seconds,
            )
            await self.chat_log.save_outbound(
                phone,
                message,
                metadata={"intent": intent.value, "message_id": message_id},
            )
            outcome.replies.append(message)
            outcome.intents.append(intent.value)
            patch["last_intent"] = intent.value
            patch["last_change_at"] = now
            return True

        def move(target: ConversationPhase, intent: Intent) -> None:
            if not can_transition(outcome.phase, target, order_in_progress=order_in_progress):
                return
            outcome.transitions.append((outcome.phase, target, intent.value))
            outcome.phase = target
            patch["conversation_phase"] = target
            patch["last_change_at"] = now

        product = detect_product(text)
        if product and product != current_product:
            current_product = product
            patch["current_product"] = product

        name = extract_customer_name(text)
        if name and name != state.customer_name:
            patch["customer_name"] = name
            flags.name_captured = True
            patch["flags"] = flags

        if not state.flags.greeted:
            if await reply(GREETING_TEXT, Intent.GREETING):
                flags.greeted = True
                patch["flags"] = flags
                if outcome.phase == ConversationPhase.GREETING:
                    move(ConversationPhase.DISCOVERY, Intent.GREETING)
        elif outcome.phase == ConversationPhase.GREETING:
            move(ConversationPhase.DISCOVERY, Intent.GREETING)

        if text and not is_terminal(outcome.phase):
            confirming = outcome.phase == ConversationPhase.CONFIRMATION
            details = detect_order_details(text)
            # "sí, confirmo las 50 unidades" closes the order instead of re-summarizing it.
            if confirming and is_positive_confirmation(text):
                if await reply(CLOSING_TEXT, Intent.CONFIRMATION_POSITIVE):
                    move(ConversationPhase.CLOSING, Intent.CONFIRMATION_POSITIVE)
                    order_in_progress = False
                    patch["order_in_progress"] = False
            elif details.has_any:
                summary = build_order_summary(current_product, details)
                if await reply(summary, Intent.ORDER_SUMMARY):
                    move(ConversationPhase.CONFIRMATION, Intent.ORDER_SUMMARY)
                    order_in_progress = True
                    patch["order_in_progress"] = True
                    patch["order_details"] = details.to_dict()
            elif confirming and is_negative_confirmation(text):
                if await reply(CHANGES_TEXT, Intent.CONFIRMATION_NEGATIVE):
                    order_in_progress = True
                    patch["order_in_progress"] = True

        if not patch:
            return outcome

        transitions = await self._persist(phone, state, outcome, patch)
        outcome.transitions = transitions
        for from_phase, to_phase, intent in transitions:
            await self.audit.record_transition(phone, from_phase, to_phase, intent, now)
        return outcome

    async def _persist(
        self,
        phone: str,
        initial: ChatState,
        outcome: FlowOutcome,
        patch: dict,
    ) -> List[Transition]:
        recorded: List[Transition] = list(outcome.transitions)
        target = patch.get("conversation_phase")

        def _apply(current: ChatState) -> dict:
            nonlocal recorded
            final = dict(patch)
            if target is None or current.conversation_phase == initial.conversation_phase:
                return final
            # Phase changed concurrently: only keep the move if it is still legal.
            if current.conversation_phase == target:
                final.pop("conversation_phase")
                recorded = []
            elif can_transition(
                current.conversation_phase, target, order_in_progress=current.order_in_progress
            ):
                recorded = [(current.conversation_phase, target, recorded[-1][2])]
            else:
                final.pop("conversation_phase")
                recorded = []
                logger.warning(
                    "Phase move dropped after concurrent change",
                    extra={
                        "context": {
                            "phone": phone,
                            "current": current.conversation_phase.value,
                            "target": target.value,
                        }
                    },
                )
            return final

        updated = await self.store.transactional_update(phone, _apply)
        outcome.phase = updated.conversation_phase
        return recorded
