"""Outbound WhatsApp channel."""

from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from app.logging_config import get_logger

logger = get_logger("whatsapp_service")

STRUCTURED_MEDIA_KINDS = ("document", "image", "video")


class ProviderError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ProviderNotConfiguredError(ProviderError):
    """Raised when a send is attempted before credentials are configured."""


class MessagingProvider(ABC):
    """Outbound channel used by the bot and by operators."""

    @abstractmethod
    async def send_message(self, phone: str, text: str) -> Optional[str]:
        """Send plain text. Returns the provider message id when known."""

    @abstractmethod
    async def send_structured_media(
        self,
        phone: str,
        kind: str,
        url: str,
        caption: Optional[str] = None,
    ) -> Optional[str]:
        """Send a document, image or video by URL."""


def _filename_from_url(url: str) -> str:
    path = unquote(urlparse(url).path or "")
    name = path.rstrip("/").rsplit("/", 1)[-1]
    return name or "catalogo.pdf"


class MetaWhatsAppProvider(MessagingProvider):
    """WhatsApp Cloud API (Graph API /messages endpoint)."""

    def __init__(
        self,
        token: Optional[str],
        phone_number_id: Optional[str],
        *,
        api_version: str = "v22.0",
        base_url: str = "https://graph.facebook.com",
        timeout_seconds: float = 15.0,
    ):
        self.token = token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.token and self.phone_number_id)

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.api_version}/{self.phone_number_id}/messages"

    async def _post(self, payload: dict) -> Optional[str]:
        if not self.is_configured:
            raise ProviderNotConfiguredError("WhatsApp provider is not configured (WHATSAPP_TOKEN/WHATSAPP_PHONE_NUMBER_ID)")

        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(
                self.messages_url,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

        if response.status_code >= 300:
            logger.error(
                "WhatsApp send failed",
                extra={
                    "context": {
                        "phone": payload.get("to"),
                        "type": payload.get("type"),
                        "status": response.status_code,
                        "body": response.text[:200],
                    }
                },
            )
            raise ProviderError(
                f"WhatsApp API error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )

        data = response.json() if response.content else {}
        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        logger.info(
            "WhatsApp message sent",
            extra={"context": {"phone": payload.get("to"), "type": payload.get("type"), "message_id": message_id}},
        )
        return message_id

    async def send_message(self, phone: str, text: str) -> Optional[str]:
        return await self._post(
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": phone,
                "type": "text",
                "text": {"preview_url": True, "body": text},
            }
        )

    async def send_structured_media(
        self,
        phone: str,
        kind: str,
        url: str,
        caption: Optional[str] = None,
    ) -> Optional[str]:
        kind = (kind or "").strip().lower()
        if kind not in STRUCTURED_MEDIA_KINDS:
            raise ValueError(f"Unsupported media kind: {kind}")
        if not url:
            raise ValueError("Media url is required")

        media: dict = {"link": url}
        if caption:
            media["caption"] = caption
        if kind == "document":
            media["filename"] = _filename_from_url(url)

        return await self._post(
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": phone,
                "type": kind,
                kind: media,
            }
        )
