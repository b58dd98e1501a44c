"""Append-only audit trail. Writing an audit entry never interrupts the caller."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Optional

from app.database import SessionLocal
from app.logging_config import get_logger
from app.models import AuditEntry, StateTransition
from app.services.chat_state import utcnow
from app.services.state_machine import ConversationPhase

logger = get_logger("audit_service")

DEDUP_SKIPPED = "dedupSkipped"
SEND_SUPPRESSED_BY_HUMAN = "sendSuppressedByHuman"
CATALOG_SENT = "catalogSent"
CATALOG_LIST_SENT = "catalogListSent"
CATALOG_RESEND_BLOCKED = "catalogResendBlocked"
CATALOG_SEND_FAILED = "catalogSendFailed"
MEDIA_UPLOAD_FAILED = "mediaUploadFailed"
HANDOFF_ENABLED = "handoffEnabled"
HANDOFF_DISABLED = "handoffDisabled"
OPERATOR_MESSAGES = "operatorMessages"
PROCESSING_FAILED = "processingFailed"
STATE_RESET = "stateReset"


class AuditSink(ABC):
    async def append(self, collection: str, entry: dict) -> None:
        try:
            await self._write(collection, entry)
        except Exception as e:
            logger.warning(
                "Audit write failed",
                extra={"context": {"collection": collection, "phone": entry.get("phone"), "error": str(e)}},
            )

    async def record_transition(
        self,
        phone: str,
        from_phase: ConversationPhase,
        to_phase: ConversationPhase,
        intent: Optional[str],
        occurred_at: Optional[datetime] = None,
    ) -> None:
        logger.info(
            "Phase transition",
            extra={
                "context": {
                    "phone": phone,
                    "from": from_phase.value,
                    "to": to_phase.value,
                    "intent": intent,
                }
            },
        )
        try:
            await self._write_transition(phone, from_phase, to_phase, intent, occurred_at or utcnow())
        except Exception as e:
            logger.warning(
                "Transition log failed",
                extra={"context": {"phone": phone, "error": str(e)}},
            )

    @abstractmethod
    async def _write(self, collection: str, entry: dict) -> None:
        pass

    @abstractmethod
    async def _write_transition(
        self,
        phone: str,
        from_phase: ConversationPhase,
        to_phase: ConversationPhase,
        intent: Optional[str],
        occurred_at: datetime,
    ) -> None:
        pass


class SqlAuditSink(AuditSink):
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def _insert(self, row) -> None:
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _write(self, collection: str, entry: dict) -> None:
        payload = {key: value for key, value in entry.items() if key != "phone"}
        row = AuditEntry(
            collection=collection,
            phone=entry.get("phone"),
            payload=_jsonable(payload),
            created_at=utcnow(),
        )
        await asyncio.to_thread(self._insert, row)

    async def _write_transition(self, phone, from_phase, to_phase, intent, occurred_at) -> None:
        row = StateTransition(
            phone=phone,
            from_phase=from_phase.value,
            to_phase=to_phase.value,
            intent=intent,
            occurred_at=occurred_at,
        )
        await asyncio.to_thread(self._insert, row)


def _jsonable(value):
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value
