from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class OperatorPayload(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None


class TakeoverRequest(BaseModel):
    operator: Optional[OperatorPayload] = None
    reason: Optional[str] = None
    metadata: Optional[dict] = None


class ReleaseRequest(BaseModel):
    operator: Optional[OperatorPayload] = None
    reason: Optional[str] = None


class OperatorMessageRequest(BaseModel):
    phone: str
    message: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None  # document, image, video, anything else is sent as a link
    operator: Optional[OperatorPayload] = None


class PanelResponse(BaseModel):
    success: bool
    message: str
    data: Optional[dict] = None


class ChatStatusResponse(BaseModel):
    phone: str
    state: dict
    document: Optional[dict] = None


class ChatMessageOut(BaseModel):
    origin: str
    text: Optional[str] = None
    file_url: Optional[str] = None
    file_type: str = "text"
    created_at: Optional[datetime] = None


class ChatHistoryResponse(BaseModel):
    phone: str
    messages: List[ChatMessageOut]
