from sqlalchemy import Column, DateTime, Text, func

from app.database import Base
from app.models.types import JSONDocument


class CatalogProduct(Base):
    __tablename__ = "catalog_products"

    id = Column(Text, primary_key=True)
    document = Column(JSONDocument, nullable=False, default=dict)  # raw product document, any legacy shape
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
