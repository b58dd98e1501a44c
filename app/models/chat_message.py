import uuid

from sqlalchemy import Column, DateTime, Index, Text, Uuid

from app.database import Base
from app.models.types import JSONDocument


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (Index("ix_chat_messages_phone_created_at", "phone", "created_at"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone = Column(Text, nullable=False)
    text = Column(Text)
    file_url = Column(Text)
    file_type = Column(Text)  # text, image, audio, video, document
    origin = Column(Text, nullable=False)  # client, bot, operator
    message_metadata = Column("metadata", JSONDocument, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
