"""Per-phone chat state persistence.

One ``chat_states`` row per phone holds a JSON document. Reads go through
:func:`merge_legacy_fields`, writes through :func:`to_document` and
:func:`merge_document`, so callers only ever see :class:`ChatState`.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.logging_config import get_logger
from app.models import ChatStateRecord
from app.services.chat_state import (
    ChatState,
    default_patch,
    fill_legacy_counterparts,
    merge_document,
    merge_legacy_fields,
    to_document,
)

logger = get_logger("state_store")

StateUpdater = Callable[[ChatState], Optional[dict]]


class ChatStateStore(ABC):
    """Async interface over the per-phone state documents."""

    @abstractmethod
    async def get(self, phone: str) -> ChatState:
        """Return the canonical state, creating it with defaults if absent."""

    @abstractmethod
    async def merge(self, phone: str, patch: dict) -> None:
        """Merge-write canonical fields; fields not in ``patch`` are left alone."""

    @abstractmethod
    async def transactional_update(self, phone: str, updater: StateUpdater) -> ChatState:
        """Read-modify-write under a row lock. ``updater`` returns a patch or None."""

    @abstractmethod
    async def reset(self, phone: str) -> ChatState:
        """Replace the document with a freshly seeded default state."""

    @abstractmethod
    async def snapshot(self, phone: str) -> dict:
        """Raw stored document, legacy keys included."""


class SqlChatStateStore(ChatStateStore):
    def __init__(self, session_factory=SessionLocal, *, legacy_write_back: bool = True):
        self.session_factory = session_factory
        self.legacy_write_back = legacy_write_back

    def _default_document(self) -> dict:
        return to_document(default_patch(), legacy_write_back=self.legacy_write_back)

    def _load_for_update(self, db: Session, phone: str) -> ChatStateRecord:
        record = db.query(ChatStateRecord).filter(ChatStateRecord.phone == phone).with_for_update().first()
        if record is None:
            record = ChatStateRecord(phone=phone, data=self._default_document())
            db.add(record)
            db.flush()
            logger.info("Chat state created", extra={"context": {"phone": phone}})
        return record

    def _get_sync(self, phone: str) -> ChatState:
        db = self.session_factory()
        try:
            try:
                record = self._load_for_update(db, phone)
            except IntegrityError:
                # Created concurrently by another request.
                db.rollback()
                record = self._load_for_update(db, phone)
            document = record.data or {}
            filled = fill_legacy_counterparts(document)
            if filled != document:
                record.data = filled
            db.commit()
            return merge_legacy_fields(filled, phone)
        finally:
            db.close()

    def _merge_sync(self, phone: str, patch: dict) -> None:
        patch_document = to_document(patch, legacy_write_back=self.legacy_write_back)
        db = self.session_factory()
        try:
            record = self._load_for_update(db, phone)
            record.data = merge_document(record.data, patch_document)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _transactional_update_sync(self, phone: str, updater: StateUpdater) -> ChatState:
        db = self.session_factory()
        try:
            record = self._load_for_update(db, phone)
            current = merge_legacy_fields(record.data, phone)
            patch = updater(current)
            if not patch:
                db.commit()
                return current
            record.data = merge_document(
                record.data,
                to_document(patch, legacy_write_back=self.legacy_write_back),
            )
            db.commit()
            return merge_legacy_fields(record.data, phone)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _reset_sync(self, phone: str) -> ChatState:
        db = self.session_factory()
        try:
            record = self._load_for_update(db, phone)
            record.data = self._default_document()
            db.commit()
            logger.info("Chat state reset", extra={"context": {"phone": phone}})
            return merge_legacy_fields(record.data, phone)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _snapshot_sync(self, phone: str) -> dict:
        db = self.session_factory()
        try:
            record = db.get(ChatStateRecord, phone)
            return dict(record.data or {}) if record else {}
        finally:
            db.close()

    async def get(self, phone: str) -> ChatState:
        return await asyncio.to_thread(self._get_sync, phone)

    async def merge(self, phone: str, patch: dict) -> None:
        await asyncio.to_thread(self._merge_sync, phone, patch)

    async def transactional_update(self, phone: str, updater: StateUpdater) -> ChatState:
        return await asyncio.to_thread(self._transactional_update_sync, phone, updater)

    async def reset(self, phone: str) -> ChatState:
        return await asyncio.to_thread(self._reset_sync, phone)

    async def snapshot(self, phone: str) -> dict:
        return await asyncio.to_thread(self._snapshot_sync, phone)
