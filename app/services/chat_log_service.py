"""Conversation history ("live chat") shared by the bot, the AI agent and operators."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from app.database import SessionLocal
from app.logging_config import get_logger
from app.models import ChatMessage
from app.services.chat_state import utcnow

logger = get_logger("chat_log")

ORIGIN_CLIENT = "client"
ORIGIN_BOT = "bot"
ORIGIN_OPERATOR = "operator"


@dataclass
class LoggedMessage:
    origin: str
    text: Optional[str]
    file_url: Optional[str] = None
    file_type: str = "text"
    created_at: Optional[datetime] = None


class ChatLog(ABC):
    @abstractmethod
    async def append(
        self,
        phone: str,
        *,
        origin: str,
        text: Optional[str],
        file_url: Optional[str] = None,
        file_type: str = "text",
        metadata: Optional[dict] = None,
    ) -> None:
        pass

    @abstractmethod
    async def recent(self, phone: str, limit: int = 10) -> List[LoggedMessage]:
        """Most recent messages, oldest first."""

    async def save_inbound(
        self,
        phone: str,
        text: Optional[str],
        *,
        file_url: Optional[str] = None,
        file_type: str = "text",
        metadata: Optional[dict] = None,
    ) -> None:
        await self.append(
            phone,
            origin=ORIGIN_CLIENT,
            text=text,
            file_url=file_url,
            file_type=file_type,
            metadata=metadata,
        )

    async def save_outbound(
        self,
        phone: str,
        text: Optional[str],
        *,
        origin: str = ORIGIN_BOT,
        file_url: Optional[str] = None,
        file_type: str = "text",
        metadata: Optional[dict] = None,
    ) -> None:
        await self.append(
            phone,
            origin=origin,
            text=text,
            file_url=file_url,
            file_type=file_type,
            metadata=metadata,
        )


class SqlChatLog(ChatLog):
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def _append_sync(self, row: ChatMessage) -> None:
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _recent_sync(self, phone: str, limit: int) -> List[LoggedMessage]:
        db = self.session_factory()
        try:
            rows = (
                db.query(ChatMessage)
                .filter(ChatMessage.phone == phone)
                .order_by(ChatMessage.created_at.desc())
                .limit(limit)
                .all()
            )
            return [
                LoggedMessage(
                    origin=row.origin,
                    text=row.text,
                    file_url=row.file_url,
                    file_type=row.file_type or "text",
                    created_at=row.created_at,
                )
                for row in reversed(rows)
            ]
        finally:
            db.close()

    async def append(
        self,
        phone: str,
        *,
        origin: str,
        text: Optional[str],
        file_url: Optional[str] = None,
        file_type: str = "text",
        metadata: Optional[dict] = None,
    ) -> None:
        row = ChatMessage(
            phone=phone,
            text=text,
            file_url=file_url,
            file_type=file_type,
            origin=origin,
            message_metadata=metadata or {},
            created_at=utcnow(),
        )
        await asyncio.to_thread(self._append_sync, row)
        logger.debug(f"Saved {origin} message", extra={"context": {"phone": phone}})

    async def recent(self, phone: str, limit: int = 10) -> List[LoggedMessage]:
        return await asyncio.to_thread(self._recent_sync, phone, limit)
