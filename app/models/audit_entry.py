import uuid

from sqlalchemy import Column, DateTime, Text, Uuid

from app.database import Base
from app.models.types import JSONDocument


class AuditEntry(Base):
    __tablename__ = "audit_entries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    collection = Column(Text, nullable=False, index=True)  # dedupSkipped, catalogSent, ...
    phone = Column(Text, index=True)
    payload = Column(JSONDocument, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
