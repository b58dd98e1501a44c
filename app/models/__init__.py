from app.models.audit_entry import AuditEntry
from app.models.catalog_product import CatalogProduct
from app.models.chat_message import ChatMessage
from app.models.chat_state import ChatStateRecord
from app.models.state_transition import StateTransition

__all__ = [
    "ChatStateRecord",
    "ChatMessage",
    "AuditEntry",
    "StateTransition",
    "CatalogProduct",
]
