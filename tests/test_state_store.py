import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models import AuditEntry, CatalogProduct, ChatMessage, ChatStateRecord, StateTransition
from app.services.audit_service import SqlAuditSink
from app.services.catalog_service import SqlCatalogSource
from app.services.chat_log_service import SqlChatLog
from app.services.state_machine import ConversationPhase
from app.services.state_store import SqlChatStateStore

PHONE = "573001112233"
TABLES = [model.__table__ for model in (ChatStateRecord, ChatMessage, AuditEntry, StateTransition, CatalogProduct)]


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine, tables=TABLES)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def _raw(session_factory, phone=PHONE):
    db = session_factory()
    try:
        record = db.get(ChatStateRecord, phone)
        return dict(record.data) if record else None
    finally:
        db.close()


def _seed(session_factory, data, phone=PHONE):
    db = session_factory()
    try:
        db.add(ChatStateRecord(phone=phone, data=data))
        db.commit()
    finally:
        db.close()


class TestSqlChatStateStore:
    def test_get_creates_default_state(self, session_factory):
        store = SqlChatStateStore(session_factory)

        state = asyncio.run(store.get(PHONE))

        assert state.phone == PHONE
        assert state.conversation_phase == ConversationPhase.GREETING
        raw = _raw(session_factory)
        assert raw["estadoActual"] == "GREETING"
        assert raw["state"] == "GREETING"
        assert raw["catalogoEnviado"] is False

    def test_get_backfills_legacy_counterpart(self, session_factory):
        _seed(session_factory, {"estadoActual": "CATALOGO_ENVIADO", "catalogoEnviado": True})
        store = SqlChatStateStore(session_factory)

        state = asyncio.run(store.get(PHONE))

        assert state.conversation_phase == ConversationPhase.CATALOG_SENT
        assert state.catalog_sent is True
        raw = _raw(session_factory)
        assert raw["state"] == "CATALOG_SENT"
        assert raw["has_sent_catalog"] is True

    def test_merge_keeps_unrelated_fields(self, session_factory):
        _seed(session_factory, {"nombre": "Andrea", "catalogoRef": "chompas", "extra": {"keep": 1}})
        store = SqlChatStateStore(session_factory)

        asyncio.run(store.merge(PHONE, {"human_mode": True}))

        raw = _raw(session_factory)
        assert raw["nombre"] == "Andrea"
        assert raw["catalogoRef"] == "chompas"
        assert raw["extra"] == {"keep": 1}
        assert raw["human_mode"] is True
        assert raw["modoHumano"] is True

    def test_merge_canonical_only(self, session_factory):
        store = SqlChatStateStore(session_factory, legacy_write_back=False)

        asyncio.run(store.merge(PHONE, {"catalog_ref": "camisetas"}))

        raw = _raw(session_factory)
        assert raw["catalog_ref"] == "camisetas"
        assert "catalogoRef" not in raw

    def test_transactional_update(self, session_factory):
        store = SqlChatStateStore(session_factory)
        asyncio.run(store.merge(PHONE, {"catalog_resend_attempts": 1}))

        updated = asyncio.run(
            store.transactional_update(
                PHONE,
                lambda current: {"catalog_resend_attempts": current.catalog_resend_attempts + 1},
            )
        )

        assert updated.catalog_resend_attempts == 2
        assert _raw(session_factory)["catalogoIntentos"] == 2

    def test_transactional_update_without_patch(self, session_factory):
        store = SqlChatStateStore(session_factory)

        state = asyncio.run(store.transactional_update(PHONE, lambda current: None))

        assert state.catalog_resend_attempts == 0

    def test_failed_updater_rolls_back(self, session_factory):
        store = SqlChatStateStore(session_factory)
        asyncio.run(store.merge(PHONE, {"catalog_ref": "chompas"}))

        def _boom(current):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(store.transactional_update(PHONE, _boom))
        assert asyncio.run(store.get(PHONE)).catalog_ref == "chompas"

    def test_datetimes_round_trip(self, session_factory):
        store = SqlChatStateStore(session_factory)
        sent_at = datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)

        asyncio.run(store.merge(PHONE, {"catalog_sent_at": sent_at}))

        assert asyncio.run(store.get(PHONE)).catalog_sent_at == sent_at

    def test_reset(self, session_factory):
        store = SqlChatStateStore(session_factory)
        asyncio.run(
            store.merge(
                PHONE,
                {"conversation_phase": ConversationPhase.CLOSING, "flags": {"greeted": True}},
            )
        )

        state = asyncio.run(store.reset(PHONE))

        assert state.conversation_phase == ConversationPhase.GREETING
        assert state.flags.greeted is False
        assert _raw(session_factory)["estadoActual"] == "GREETING"

    def test_snapshot(self, session_factory):
        store = SqlChatStateStore(session_factory)
        assert asyncio.run(store.snapshot(PHONE)) == {}
        asyncio.run(store.merge(PHONE, {"customer_name": "Andrea"}))
        assert asyncio.run(store.snapshot(PHONE))["nombre"] == "Andrea"


class TestSqlChatLog:
    def test_recent_is_oldest_first(self, session_factory):
        chat_log = SqlChatLog(session_factory)

        async def _write():
            await chat_log.save_inbound(PHONE, "hola")
            await chat_log.save_outbound(PHONE, "¡Hola!")
            await chat_log.save_inbound(PHONE, "catálogo")
            await chat_log.save_inbound("573009998877", "otro cliente")

        asyncio.run(_write())

        recent = asyncio.run(chat_log.recent(PHONE, limit=2))
        assert [(item.origin, item.text) for item in recent] == [("bot", "¡Hola!"), ("client", "catálogo")]


class TestSqlAuditSink:
    def test_append_and_transition(self, session_factory):
        audit = SqlAuditSink(session_factory)
        at = datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)

        asyncio.run(audit.append("catalogSent", {"phone": PHONE, "catalog_ref": "chompas", "at": at}))
        asyncio.run(
            audit.record_transition(PHONE, ConversationPhase.DISCOVERY, ConversationPhase.CATALOG_SENT, "catalog", at)
        )

        db = session_factory()
        try:
            entry = db.query(AuditEntry).one()
            assert entry.collection == "catalogSent"
            assert entry.phone == PHONE
            assert entry.payload == {"catalog_ref": "chompas", "at": "2024-05-06T15:00:00+00:00"}
            transition = db.query(StateTransition).one()
            assert (transition.from_phase, transition.to_phase) == ("DISCOVERY", "CATALOG_SENT")
        finally:
            db.close()

    def test_write_failure_is_swallowed(self):
        def _broken_factory():
            raise RuntimeError("database unavailable")

        audit = SqlAuditSink(_broken_factory)

        asyncio.run(audit.append("catalogSent", {"phone": PHONE}))


class TestSqlCatalogSource:
    def test_reads_and_normalizes_rows(self, session_factory):
        db = session_factory()
        try:
            db.add(CatalogProduct(id="p-01", document={"keywords": ["Chompas"], "tipo": "pdf", "url": "https://x/c.pdf"}))
            db.add(CatalogProduct(id="p-02", document={"tipo": "pdf"}))
            db.commit()
        finally:
            db.close()

        entries = asyncio.run(SqlCatalogSource(session_factory).list_entries())

        assert [entry.id for entry in entries] == ["p-01"]
        assert entries[0].keywords == ("chompas",)
