"""Service graph built once at startup and handed to routers through FastAPI dependencies."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from app.config import Settings, settings
from app.database import SessionLocal
from app.logging_config import get_logger
from app.services.agent_service import AIAgent, LLMAgent
from app.services.audit_service import AuditSink, SqlAuditSink
from app.services.catalog_dispatcher import CatalogDispatcher
from app.services.catalog_service import CatalogMatcher, SqlCatalogSource
from app.services.chat_log_service import ChatLog, SqlChatLog
from app.services.conversation_service import ConversationStateMachine
from app.services.dedup_service import Deduplicator
from app.services.handoff_service import HandoffGate
from app.services.llm import OpenAIProvider
from app.services.media_service import GraphMediaStore, MediaStore
from app.services.orchestrator import ConversationOrchestrator
from app.services.state_store import ChatStateStore, SqlChatStateStore
from app.services.whatsapp_service import MessagingProvider, MetaWhatsAppProvider

logger = get_logger("dependencies")


@dataclass
class Services:
    store: ChatStateStore
    chat_log: ChatLog
    audit: AuditSink
    provider: MessagingProvider
    handoff: HandoffGate
    orchestrator: ConversationOrchestrator
    media_store: Optional[MediaStore] = None
    matcher: Optional[CatalogMatcher] = None


def build_services(config: Settings = settings, session_factory=SessionLocal) -> Services:
    store = SqlChatStateStore(session_factory, legacy_write_back=config.state_legacy_write_back)
    chat_log = SqlChatLog(session_factory)
    audit = SqlAuditSink(session_factory)

    provider = MetaWhatsAppProvider(
        config.whatsapp_token,
        config.whatsapp_phone_number_id,
        api_version=config.whatsapp_api_version,
        base_url=config.whatsapp_graph_base_url,
        timeout_seconds=config.send_timeout_seconds,
    )
    if not provider.is_configured:
        logger.warning("WhatsApp provider not configured, outbound sends will fail")

    media_store = GraphMediaStore(
        token=config.whatsapp_token,
        storage_dir=config.media_storage_dir,
        signing_secret=config.media_signing_secret,
        public_base_url=config.public_base_url,
        api_version=config.whatsapp_api_version,
        graph_base_url=config.whatsapp_graph_base_url,
        url_ttl_seconds=config.media_url_ttl_seconds,
        max_bytes=config.media_max_bytes,
        timeout_seconds=config.media_timeout_seconds,
    )

    matcher = CatalogMatcher(SqlCatalogSource(session_factory), ttl_seconds=config.catalog_cache_ttl_seconds)

    if not config.openai_api_key:
        logger.warning("OPENAI_API_KEY not configured, AI replies will use the fallback text")
    agent: AIAgent = LLMAgent(
        OpenAIProvider(config.openai_api_key or "", default_model=config.llm_model),
        model=config.llm_model,
        fallback_model=config.llm_fallback_model,
        system_prompt=config.agent_system_prompt,
        timeout_seconds=config.agent_timeout_seconds,
    )

    handoff = HandoffGate(store, audit, chat_log, provider)
    orchestrator = ConversationOrchestrator(
        store=store,
        deduplicator=Deduplicator(store, audit),
        handoff=handoff,
        chat_log=chat_log,
        audit=audit,
        dispatcher=CatalogDispatcher(
            store,
            matcher,
            provider,
            chat_log,
            audit,
            resend_cooldown_seconds=config.catalog_resend_cooldown_seconds,
            resend_max_attempts=config.catalog_resend_max_attempts,
            send_timeout_seconds=config.send_timeout_seconds,
        ),
        state_machine=ConversationStateMachine(
            store,
            provider,
            chat_log,
            audit,
            throttle_seconds=config.intent_throttle_seconds,
            send_timeout_seconds=config.send_timeout_seconds,
        ),
        agent=agent,
        provider=provider,
        media_store=media_store,
        agent_timeout_seconds=config.agent_timeout_seconds,
        send_timeout_seconds=config.send_timeout_seconds,
        history_limit=config.conversation_history_limit,
    )
    return Services(
        store=store,
        chat_log=chat_log,
        audit=audit,
        provider=provider,
        handoff=handoff,
        orchestrator=orchestrator,
        media_store=media_store,
        matcher=matcher,
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Services not initialized")
    return services


def get_orchestrator(services: Services = Depends(get_services)) -> ConversationOrchestrator:
    return services.orchestrator


def get_handoff_gate(services: Services = Depends(get_services)) -> HandoffGate:
    return services.handoff
