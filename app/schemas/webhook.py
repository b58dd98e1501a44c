from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field

MessageType = Literal["text", "image", "audio", "video", "document"]


class MediaRef(BaseModel):
    id: str
    mime_type: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("mimeType", "mime_type"),
    )
    filename: Optional[str] = None


class InboundEvent(BaseModel):
    """Provider-neutral inbound message."""

    phone: str = Field(validation_alias=AliasChoices("from", "phone"))
    message_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("messageId", "message_id"),
    )
    type: MessageType = "text"
    body: Optional[str] = None
    media_ref: Optional[MediaRef] = Field(
        default=None,
        validation_alias=AliasChoices("mediaRef", "media_ref"),
    )
    contact_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("contactName", "contact_name", "name"),
    )


class WebhookResponse(BaseModel):
    success: bool
    message: str
    processed: int = 0
    outcomes: List[str] = []
