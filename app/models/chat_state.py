from sqlalchemy import Column, DateTime, Text, func

from app.database import Base
from app.models.types import JSONDocument


class ChatStateRecord(Base):
    __tablename__ = "chat_states"

    phone = Column(Text, primary_key=True)
    data = Column(JSONDocument, nullable=False, default=dict)  # canonical + legacy keys
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
