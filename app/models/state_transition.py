import uuid

from sqlalchemy import Column, DateTime, Text, Uuid

from app.database import Base


class StateTransition(Base):
    __tablename__ = "state_transitions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone = Column(Text, nullable=False, index=True)
    from_phase = Column(Text, nullable=False)
    to_phase = Column(Text, nullable=False)
    intent = Column(Text)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
