import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeAgent, FakeProvider

from app.schemas.webhook import InboundEvent
from app.services import audit_service
from app.services.agent_service import FALLBACK_REPLY, AgentReply
from app.services.catalog_dispatcher import CatalogDispatcher
from app.services.conversation_service import GREETING_TEXT, ConversationStateMachine
from app.services.dedup_service import Deduplicator
from app.services.handoff_service import HandoffGate
from app.services.media_service import MediaStore, MediaUploadError
from app.services.orchestrator import (
    HUMAN_REQUEST_ACK,
    TRY_AGAIN_TEXT,
    ConversationOrchestrator,
    HandleOutcome,
)
from app.services.state_machine import ConversationPhase
from app.services.whatsapp_service import ProviderError

PHONE = "573001112233"


class FakeMediaStore(MediaStore):
    def __init__(self, error=None):
        self.error = error
        self.uploads = []

    async def upload(self, media_id, mime_hint=None, filename=None, media_type=None):
        self.uploads.append((media_id, mime_hint, filename, media_type))
        if self.error is not None:
            raise self.error
        return f"https://api.example.com/media/20240506/{media_id}.jpg?expires=1&sig=abc"


def _build(store, provider, chat_log, audit, matcher, clock, *, agent=None, media_store=None, **kwargs):
    handoff = HandoffGate(store, audit, chat_log, provider)
    return ConversationOrchestrator(
        store=store,
        deduplicator=Deduplicator(store, audit),
        handoff=handoff,
        chat_log=chat_log,
        audit=audit,
        dispatcher=CatalogDispatcher(store, matcher, provider, chat_log, audit, clock=clock),
        state_machine=ConversationStateMachine(store, provider, chat_log, audit, clock=clock),
        agent=agent or FakeAgent(),
        provider=provider,
        media_store=media_store,
        clock=clock,
        **kwargs,
    )


@pytest.fixture
def agent():
    return FakeAgent()


@pytest.fixture
def orchestrator(store, provider, chat_log, audit, matcher, clock, agent):
    return _build(store, provider, chat_log, audit, matcher, clock, agent=agent)


def _event(body=None, message_id="m1", **extra):
    payload = {"from": PHONE, "messageId": message_id, "body": body}
    payload.update(extra)
    return InboundEvent.model_validate(payload)


def _handle(orchestrator, event):
    return asyncio.run(orchestrator.handle(event))


def _greeted(store):
    asyncio.run(
        store.merge(PHONE, {"flags": {"greeted": True}, "conversation_phase": ConversationPhase.DISCOVERY})
    )


class TestPrecedence:
    def test_first_message_is_greeted(self, orchestrator, store, provider, chat_log):
        outcome = _handle(orchestrator, _event("hola"))

        assert outcome == HandleOutcome.ORDER_FLOW
        assert provider.texts == [GREETING_TEXT]
        assert chat_log.messages[0]["origin"] == "client"
        assert chat_log.messages[0]["text"] == "hola"
        state = asyncio.run(store.get(PHONE))
        assert state.last_message_id == "m1"
        assert state.last_contact_at is not None

    def test_duplicate_is_dropped(self, orchestrator, provider, chat_log):
        _handle(orchestrator, _event("hola"))

        outcome = _handle(orchestrator, _event("hola"))

        assert outcome == HandleOutcome.DUPLICATE
        assert len(provider.sent) == 1
        assert len([m for m in chat_log.messages if m["origin"] == "client"]) == 1

    def test_catalog_before_order_flow(self, orchestrator, store, provider, agent):
        outcome = _handle(orchestrator, _event("quiero ver chompas"))

        assert outcome == HandleOutcome.CATALOG
        assert provider.sent[0]["kind"] == "document"
        assert agent.calls == []
        assert asyncio.run(store.get(PHONE)).conversation_phase == ConversationPhase.CATALOG_SENT

    def test_blocked_resend_falls_through(self, orchestrator, store, provider, agent, clock):
        _handle(orchestrator, _event("quiero ver chompas", "m1"))
        clock.advance(10)

        outcome = _handle(orchestrator, _event("quiero ver chompas", "m2"))

        # Not greeted yet: the order flow answers instead of resending.
        assert outcome == HandleOutcome.ORDER_FLOW
        assert provider.texts == [GREETING_TEXT]
        assert asyncio.run(store.get(PHONE)).catalog_resend_attempts == 1

    def test_order_scenario(self, orchestrator, store, provider, clock):
        _greeted(store)
        _handle(orchestrator, _event("quiero ver chompas", "m1"))
        clock.advance(20)

        outcome = _handle(orchestrator, _event("50 unidades talla M color negro", "m2"))
        assert outcome == HandleOutcome.ORDER_FLOW
        assert "Producto: Chompas" in provider.texts[-1]

        clock.advance(20)
        outcome = _handle(orchestrator, _event("sí, confirmo", "m3"))
        assert outcome == HandleOutcome.ORDER_FLOW
        state = asyncio.run(store.get(PHONE))
        assert state.conversation_phase == ConversationPhase.CLOSING
        assert state.order_in_progress is False

    def test_missing_phone(self, orchestrator, provider):
        outcome = _handle(orchestrator, InboundEvent(phone="", body="hola"))
        assert outcome == HandleOutcome.INVALID
        assert provider.sent == []

    def test_empty_text_message(self, orchestrator, store, provider, agent):
        _greeted(store)

        outcome = _handle(orchestrator, _event(""))

        assert outcome == HandleOutcome.NO_ACTION
        assert provider.sent == []
        assert agent.calls == []


class TestHumanHandoff:
    def test_no_bot_output_while_human_mode(self, orchestrator, store, provider, chat_log, audit, agent):
        asyncio.run(orchestrator.handoff.enable(PHONE, reason="operator_takeover"))

        for index, text in enumerate(["hola", "quiero ver chompas", "50 unidades talla M", "gracias"]):
            outcome = _handle(orchestrator, _event(text, f"m{index}"))
            assert outcome == HandleOutcome.SUPPRESSED

        assert provider.sent == []
        assert agent.calls == []
        assert [m["text"] for m in chat_log.messages] == ["hola", "quiero ver chompas", "50 unidades talla M", "gracias"]
        suppressed = audit.collection(audit_service.SEND_SUPPRESSED_BY_HUMAN)
        assert len(suppressed) == 4
        assert suppressed[0]["stage"] == "inbound"
        assert asyncio.run(store.get(PHONE)).catalog_sent is False

    def test_legacy_human_flag_is_honored(self, orchestrator, store, provider):
        store.documents[PHONE] = {"modoHumano": True}

        assert _handle(orchestrator, _event("hola")) == HandleOutcome.SUPPRESSED
        assert provider.sent == []

    def test_user_requests_human(self, orchestrator, store, provider):
        outcome = _handle(orchestrator, _event("quiero hablar con un asesor", "m1"))

        assert outcome == HandleOutcome.HANDOFF_REQUESTED
        assert provider.texts == [HUMAN_REQUEST_ACK]
        state = asyncio.run(store.get(PHONE))
        assert state.human_mode is True
        assert state.handoff["reason"] == "user_request"

        assert _handle(orchestrator, _event("hola?", "m2")) == HandleOutcome.SUPPRESSED
        assert provider.texts == [HUMAN_REQUEST_ACK]

    def test_bot_resumes_after_release(self, orchestrator, store, provider, agent):
        _greeted(store)
        asyncio.run(orchestrator.handoff.enable(PHONE))
        _handle(orchestrator, _event("hacen envíos?", "m1"))

        asyncio.run(orchestrator.handoff.disable(PHONE))
        outcome = _handle(orchestrator, _event("hacen envíos?", "m2"))

        assert outcome == HandleOutcome.AI
        assert provider.texts == ["Claro, te ayudo con eso."]


class TestAgentFallback:
    def test_agent_reply_and_bookkeeping(self, orchestrator, store, provider, chat_log, agent):
        _greeted(store)

        outcome = _handle(orchestrator, _event("¿hacen envíos a Quito?"))

        assert outcome == HandleOutcome.AI
        assert provider.texts == ["Claro, te ayudo con eso."]
        phone, message, history = agent.calls[0]
        assert message == "¿hacen envíos a Quito?"
        assert history == []
        state = asyncio.run(store.get(PHONE))
        assert state.human_mode is False
        assert state.last_ai_latency_ms == 120
        assert state.last_ai_used_fallback is False
        assert state.last_ai_error is None
        assert chat_log.messages[-1]["metadata"]["intent"] == "ai_reply"
        assert store.documents[PHONE]["lastAiLatencyMs"] == 120

    def test_history_is_passed(self, orchestrator, store, agent, clock):
        _greeted(store)
        _handle(orchestrator, _event("¿hacen envíos?", "m1"))
        clock.advance(5)

        _handle(orchestrator, _event("¿y a Cuenca?", "m2"))

        history = agent.calls[1][2]
        assert [(item.origin, item.text) for item in history] == [
            ("client", "¿hacen envíos?"),
            ("bot", "Claro, te ayudo con eso."),
        ]

    def test_operator_takeover_during_agent_call(self, orchestrator, store, provider, audit, agent):
        _greeted(store)

        async def _takeover():
            await orchestrator.handoff.enable(PHONE, reason="operator_takeover")

        agent.before_reply = _takeover

        outcome = _handle(orchestrator, _event("¿hacen envíos?"))

        assert outcome == HandleOutcome.AI_SUPPRESSED
        assert provider.sent == []
        assert asyncio.run(store.get(PHONE)).human_mode is True
        assert audit.collection(audit_service.SEND_SUPPRESSED_BY_HUMAN)[-1]["stage"] == "ai_reply"

    def test_agent_timeout_sends_fallback(self, store, provider, chat_log, audit, matcher, clock):
        agent = FakeAgent()

        async def _hang():
            await asyncio.sleep(1)

        agent.before_reply = _hang
        orchestrator = _build(
            store, provider, chat_log, audit, matcher, clock, agent=agent, agent_timeout_seconds=0.01
        )
        _greeted(store)

        outcome = _handle(orchestrator, _event("¿hacen envíos?"))

        assert outcome == HandleOutcome.AI
        assert provider.texts == [FALLBACK_REPLY]
        state = asyncio.run(store.get(PHONE))
        assert state.last_ai_used_fallback is True
        assert state.last_ai_error == "timeout"

    def test_agent_exception_sends_fallback(self, store, provider, chat_log, audit, matcher, clock):
        agent = FakeAgent()

        async def _boom():
            raise RuntimeError("model unavailable")

        agent.before_reply = _boom
        orchestrator = _build(store, provider, chat_log, audit, matcher, clock, agent=agent)
        _greeted(store)

        assert _handle(orchestrator, _event("¿hacen envíos?")) == HandleOutcome.AI
        assert provider.texts == [FALLBACK_REPLY]
        assert asyncio.run(store.get(PHONE)).last_ai_error == "model unavailable"

    def test_blank_agent_text_replaced(self, store, provider, chat_log, audit, matcher, clock):
        agent = FakeAgent(AgentReply(text="   "))
        orchestrator = _build(store, provider, chat_log, audit, matcher, clock, agent=agent)
        _greeted(store)

        _handle(orchestrator, _event("¿hacen envíos?"))

        assert provider.texts == [FALLBACK_REPLY]


class TestMedia:
    def test_inbound_media_uploaded_and_sent_to_agent(self, store, provider, chat_log, audit, matcher, clock):
        media_store = FakeMediaStore()
        agent = FakeAgent()
        orchestrator = _build(store, provider, chat_log, audit, matcher, clock, agent=agent, media_store=media_store)
        _greeted(store)

        outcome = _handle(
            orchestrator,
            _event(type="image", mediaRef={"id": "media-1", "mimeType": "image/jpeg"}),
        )

        assert outcome == HandleOutcome.AI
        assert media_store.uploads == [("media-1", "image/jpeg", None, "image")]
        inbound = chat_log.messages[0]
        assert inbound["file_type"] == "image"
        assert inbound["file_url"].startswith("https://api.example.com/media/")
        assert "image" in agent.calls[0][1]

    def test_upload_failure_does_not_block_text(self, store, provider, chat_log, audit, matcher, clock):
        media_store = FakeMediaStore(error=MediaUploadError("Media lookup failed: 404"))
        orchestrator = _build(store, provider, chat_log, audit, matcher, clock, media_store=media_store)

        outcome = _handle(
            orchestrator,
            _event("quiero ver chompas", type="document", mediaRef={"id": "media-2"}),
        )

        assert outcome == HandleOutcome.CATALOG
        assert chat_log.messages[0]["file_url"] is None
        failures = audit.collection(audit_service.MEDIA_UPLOAD_FAILED)
        assert failures[0]["media_id"] == "media-2"


class FlakyProvider(FakeProvider):
    """Fails the first text send only."""

    def __init__(self):
        super().__init__()
        self.failures = 1

    async def send_message(self, phone, text):
        if self.failures:
            self.failures -= 1
            raise ProviderError("Graph API 500", 500)
        return await super().send_message(phone, text)


class TestIsolation:
    @patch("app.services.orchestrator.alert_error", new_callable=AsyncMock)
    def test_unexpected_error_is_contained(self, mock_alert, store, chat_log, audit, matcher, clock):
        provider = FlakyProvider()
        orchestrator = _build(store, provider, chat_log, audit, matcher, clock)

        outcome = _handle(orchestrator, _event("hola"))

        assert outcome == HandleOutcome.FAILED
        assert provider.texts == [TRY_AGAIN_TEXT]
        mock_alert.assert_awaited_once()
        failures = audit.collection(audit_service.PROCESSING_FAILED)
        assert failures[0]["error"] == "Graph API 500"

    @patch("app.services.orchestrator.alert_error", new_callable=AsyncMock)
    def test_apology_failure_is_swallowed(self, mock_alert, store, chat_log, audit, matcher, clock):
        provider = FakeProvider(fail_text=True)
        orchestrator = _build(store, provider, chat_log, audit, matcher, clock)

        assert _handle(orchestrator, _event("hola")) == HandleOutcome.FAILED
        assert provider.sent == []

    @patch("app.services.orchestrator.alert_error", new_callable=AsyncMock)
    def test_next_user_unaffected(self, mock_alert, store, chat_log, audit, matcher, clock):
        provider = FlakyProvider()
        orchestrator = _build(store, provider, chat_log, audit, matcher, clock)
        _handle(orchestrator, _event("hola"))

        event = InboundEvent.model_validate({"from": "573009998877", "messageId": "x1", "body": "hola"})
        assert _handle(orchestrator, event) == HandleOutcome.ORDER_FLOW
