import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest

from app.services.agent_service import AgentReply, AIAgent
from app.services.audit_service import AuditSink
from app.services.catalog_service import CatalogEntry, CatalogMatcher, CatalogSource, catalog_entry_from_document
from app.services.chat_log_service import ChatLog, LoggedMessage
from app.services.chat_state import (
    ChatState,
    default_patch,
    fill_legacy_counterparts,
    merge_document,
    merge_legacy_fields,
    to_document,
)
from app.services.state_store import ChatStateStore
from app.services.whatsapp_service import MessagingProvider, ProviderError

START = datetime(2024, 5, 6, 15, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class InMemoryStateStore(ChatStateStore):
    """Document store double running the same legacy adapter as the SQL store."""

    def __init__(self, documents: Optional[dict] = None, *, legacy_write_back: bool = True):
        self.documents = dict(documents or {})
        self.legacy_write_back = legacy_write_back

    def _load(self, phone: str) -> dict:
        if phone not in self.documents:
            self.documents[phone] = to_document(default_patch(), legacy_write_back=self.legacy_write_back)
        return self.documents[phone]

    async def get(self, phone: str) -> ChatState:
        filled = fill_legacy_counterparts(self._load(phone))
        self.documents[phone] = filled
        return merge_legacy_fields(filled, phone)

    async def merge(self, phone: str, patch: dict) -> None:
        self.documents[phone] = merge_document(
            self._load(phone),
            to_document(patch, legacy_write_back=self.legacy_write_back),
        )

    async def transactional_update(self, phone: str, updater) -> ChatState:
        current = merge_legacy_fields(self._load(phone), phone)
        patch = updater(current)
        if patch:
            await self.merge(phone, patch)
        return merge_legacy_fields(self.documents[phone], phone)

    async def reset(self, phone: str) -> ChatState:
        self.documents[phone] = to_document(default_patch(), legacy_write_back=self.legacy_write_back)
        return merge_legacy_fields(self.documents[phone], phone)

    async def snapshot(self, phone: str) -> dict:
        return dict(self.documents.get(phone, {}))


class FakeProvider(MessagingProvider):
    def __init__(self, *, fail_media: bool = False, fail_text: bool = False):
        self.fail_media = fail_media
        self.fail_text = fail_text
        self.sent: List[dict] = []

    @property
    def texts(self) -> List[str]:
        return [item["text"] for item in self.sent if item["kind"] == "text"]

    async def send_message(self, phone: str, text: str) -> Optional[str]:
        if self.fail_text:
            raise ProviderError("text send failed", 500)
        self.sent.append({"phone": phone, "kind": "text", "text": text})
        return f"wamid.{len(self.sent)}"

    async def send_structured_media(self, phone, kind, url, caption=None) -> Optional[str]:
        if self.fail_media:
            raise ProviderError("media send failed", 400)
        self.sent.append({"phone": phone, "kind": kind, "url": url, "caption": caption})
        return f"wamid.{len(self.sent)}"


class FakeAuditSink(AuditSink):
    def __init__(self):
        self.entries: List[tuple] = []
        self.transitions: List[tuple] = []

    def collection(self, name: str) -> List[dict]:
        return [entry for collection, entry in self.entries if collection == name]

    async def _write(self, collection, entry):
        self.entries.append((collection, entry))

    async def _write_transition(self, phone, from_phase, to_phase, intent, occurred_at):
        self.transitions.append((phone, from_phase, to_phase, intent))


class FakeChatLog(ChatLog):
    def __init__(self):
        self.messages: List[dict] = []

    async def append(self, phone, *, origin, text, file_url=None, file_type="text", metadata=None):
        self.messages.append(
            {
                "phone": phone,
                "origin": origin,
                "text": text,
                "file_url": file_url,
                "file_type": file_type,
                "metadata": metadata or {},
            }
        )

    async def recent(self, phone, limit=10):
        rows = [item for item in self.messages if item["phone"] == phone][-limit:]
        return [
            LoggedMessage(origin=row["origin"], text=row["text"], file_url=row["file_url"], file_type=row["file_type"])
            for row in rows
        ]


class FakeCatalogSource(CatalogSource):
    def __init__(self, documents: dict):
        self.documents = documents
        self.calls = 0
        self.error: Optional[Exception] = None

    async def list_entries(self) -> List[CatalogEntry]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        entries = [catalog_entry_from_document(key, doc) for key, doc in self.documents.items()]
        return [entry for entry in entries if entry is not None]


class FakeAgent(AIAgent):
    def __init__(self, reply: Optional[AgentReply] = None):
        self.reply = reply or AgentReply(text="Claro, te ayudo con eso.", latency_ms=120)
        self.calls: List[tuple] = []
        self.before_reply = None

    async def respond(self, phone, user_message, history=None):
        self.calls.append((phone, user_message, list(history or [])))
        if self.before_reply is not None:
            await self.before_reply()
        return self.reply


CATALOG_DOCUMENTS = {
    "p-01": {
        "keywords": ["chompas", "buzos"],
        "tipo": "pdf",
        "url": "https://cdn.example.com/catalogos/chompas.pdf",
        "respuesta": "Aquí tienes nuestro catálogo de chompas.",
    },
    "p-02": {
        "keyword": "Camisetas",
        "tipo": "imagen",
        "urlFirmado": "https://cdn.example.com/catalogos/camisetas.jpg",
    },
    "p-03": {
        "keywords": ["joggers"],
        "tipo": "url",
        "url": "https://tienda.example.com/joggers",
        "respuesta": "Mira los joggers aquí:",
    },
}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def audit():
    return FakeAuditSink()


@pytest.fixture
def chat_log():
    return FakeChatLog()


@pytest.fixture
def catalog_source():
    return FakeCatalogSource(dict(CATALOG_DOCUMENTS))


@pytest.fixture
def matcher(catalog_source):
    return CatalogMatcher(catalog_source, ttl_seconds=60)
