"""Catalog entries: ingestion of product documents, cached lookup and keyword matching."""

import asyncio
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from app.database import SessionLocal
from app.logging_config import get_logger
from app.models import CatalogProduct
from app.services.text_utils import matches_all_words, normalize

logger = get_logger("catalog_service")

DEFAULT_CAPTION = "Aquí tienes el catálogo solicitado."

GENERIC_CATALOG_RE = re.compile(
    r"\b(catalog\w*|cata|lista\w*|list|modelos?|models?|disen\w*|designs?|price list)\b"
)


class AssetKind(str, Enum):
    DOCUMENT = "document"
    IMAGE = "image"
    VIDEO = "video"
    LINK = "link"
    TEXT = "text"


ASSET_KIND_ALIASES = {
    "pdf": AssetKind.DOCUMENT,
    "document": AssetKind.DOCUMENT,
    "documento": AssetKind.DOCUMENT,
    "image": AssetKind.IMAGE,
    "imagen": AssetKind.IMAGE,
    "video": AssetKind.VIDEO,
    "url": AssetKind.LINK,
    "link": AssetKind.LINK,
    "enlace": AssetKind.LINK,
    "texto": AssetKind.TEXT,
    "text": AssetKind.TEXT,
}

MEDIA_KINDS = {AssetKind.DOCUMENT, AssetKind.IMAGE, AssetKind.VIDEO}


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    keywords: tuple  # non-empty, lowercased, first one is the display name
    response_text: Optional[str] = None
    asset_kind: AssetKind = AssetKind.TEXT
    asset_url: Optional[str] = None

    @property
    def primary_keyword(self) -> str:
        return self.keywords[0]

    @property
    def caption(self) -> str:
        text = (self.response_text or "").strip()
        return text or DEFAULT_CAPTION


@dataclass(frozen=True)
class CatalogMatch:
    entry: CatalogEntry
    keyword: str


def _first_string(document: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = document.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _keywords_from(document: dict) -> tuple:
    raw: Any = document.get("keywords")
    if raw is None:
        raw = document.get("keyword")
    if isinstance(raw, str):
        candidates = [raw]
    elif isinstance(raw, (list, tuple, set)):
        candidates = list(raw)
    else:
        candidates = []

    keywords: list[str] = []
    for candidate in candidates:
        if not isinstance(candidate, str):
            continue
        keyword = candidate.strip().lower()
        if keyword and keyword not in keywords:
            keywords.append(keyword)
    return tuple(keywords)


def catalog_entry_from_document(entry_id: str, document: Optional[dict]) -> Optional[CatalogEntry]:
    """Normalize one stored product document. Returns None when it has no usable keyword."""
    document = document or {}
    keywords = _keywords_from(document)
    if not keywords:
        logger.warning("Catalog document without keywords skipped", extra={"context": {"id": entry_id}})
        return None

    raw_kind = (_first_string(document, "tipo", "assetKind", "asset_kind", "type") or "texto").lower()
    asset_kind = ASSET_KIND_ALIASES.get(raw_kind, AssetKind.TEXT)
    asset_url = _first_string(document, "url", "urlFirmado", "signedUrl", "assetUrl", "asset_url")

    if asset_kind != AssetKind.TEXT and not asset_url:
        logger.warning(
            "Catalog asset without url, sending as text",
            extra={"context": {"id": entry_id, "kind": asset_kind.value}},
        )
        asset_kind = AssetKind.TEXT

    return CatalogEntry(
        id=str(entry_id),
        keywords=keywords,
        response_text=_first_string(document, "respuesta", "responseText", "response_text"),
        asset_kind=asset_kind,
        asset_url=asset_url,
    )


class CatalogSource(ABC):
    @abstractmethod
    async def list_entries(self) -> List[CatalogEntry]:
        pass


class SqlCatalogSource(CatalogSource):
    """Reads ``catalog_products`` rows."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def _load_sync(self) -> List[CatalogEntry]:
        db = self.session_factory()
        try:
            rows = db.query(CatalogProduct).all()
            entries = [catalog_entry_from_document(row.id, row.document) for row in rows]
            return [entry for entry in entries if entry is not None]
        finally:
            db.close()

    async def list_entries(self) -> List[CatalogEntry]:
        return await asyncio.to_thread(self._load_sync)


class CatalogMatcher:
    """Keyword matcher over a lazily refreshed, time-bounded cache of catalog entries."""

    def __init__(
        self,
        source: CatalogSource,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Optional[List[CatalogEntry]] = None
        self._loaded_at = 0.0

    def invalidate(self) -> None:
        self._entries = None
        self._loaded_at = 0.0

    async def entries(self) -> List[CatalogEntry]:
        now = self.clock()
        if self._entries is not None and now - self._loaded_at < self.ttl_seconds:
            return self._entries

        try:
            loaded = await self.source.list_entries()
        except Exception as e:
            if self._entries is None:
                raise
            logger.warning("Catalog refresh failed, serving cached entries", extra={"context": {"error": str(e)}})
            return self._entries

        self._entries = sorted(loaded, key=lambda entry: entry.id)
        self._loaded_at = now
        logger.debug(f"Catalog cache refreshed: {len(self._entries)} entries")
        return self._entries

    async def match(self, text: Optional[str]) -> Optional[CatalogMatch]:
        if not normalize(text):
            return None
        for entry in await self.entries():
            for keyword in entry.keywords:
                if matches_all_words(text, keyword):
                    return CatalogMatch(entry=entry, keyword=keyword)
        return None

    async def find_by_message(self, text: Optional[str]) -> Optional[CatalogEntry]:
        found = await self.match(text)
        return found.entry if found else None

    def is_generic_catalog_request(self, text: Optional[str]) -> bool:
        normalized = normalize(text)
        return bool(normalized) and GENERIC_CATALOG_RE.search(normalized) is not None

    async def build_catalog_list_message(self) -> Optional[str]:
        entries = await self.entries()
        if not entries:
            return None
        lines = [f"{index}. {entry.primary_keyword.capitalize()}" for index, entry in enumerate(entries, start=1)]
        return (
            "Estos son los catálogos disponibles:\n"
            + "\n".join(lines)
            + "\n\nEscribe el nombre del catálogo que quieres ver tal como aparece en la lista."
        )
