from typing import Optional

from app.logging_config import get_logger
from app.services import audit_service
from app.services.audit_service import AuditSink
from app.services.chat_state import ChatState, utcnow
from app.services.state_store import ChatStateStore

logger = get_logger("dedup_service")


class Deduplicator:
    """Suppress redelivered inbound events using the per-phone last message id."""

    def __init__(self, store: ChatStateStore, audit: AuditSink):
        self.store = store
        self.audit = audit

    async def should_skip(self, phone: Optional[str], message_id: Optional[str]) -> bool:
        if not phone or not message_id:
            # Malformed input never blocks processing.
            return False

        duplicate = False

        def _claim(state: ChatState) -> Optional[dict]:
            nonlocal duplicate
            if state.last_message_id == message_id:
                duplicate = True
                return None
            return {"last_message_id": message_id}

        await self.store.transactional_update(phone, _claim)

        if duplicate:
            logger.info(
                "Duplicate message_id skipped",
                extra={"context": {"phone": phone, "message_id": message_id}},
            )
            await self.audit.append(
                audit_service.DEDUP_SKIPPED,
                {"phone": phone, "message_id": message_id, "at": utcnow()},
            )
        return duplicate
