from app.schemas.panel import OperatorMessageRequest, PanelResponse, ReleaseRequest, TakeoverRequest
from app.schemas.webhook import InboundEvent, MediaRef, WebhookResponse

__all__ = [
    "InboundEvent",
    "MediaRef",
    "WebhookResponse",
    "TakeoverRequest",
    "ReleaseRequest",
    "OperatorMessageRequest",
    "PanelResponse",
]
