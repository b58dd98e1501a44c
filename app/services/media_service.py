"""Inbound media: download from the WhatsApp Graph API, store locally, expose via signed URLs."""

import hashlib
import hmac
import mimetypes
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote
from uuid import uuid4

import httpx

from app.logging_config import get_logger

logger = get_logger("media_service")

FALLBACK_EXTENSIONS = {
    "image": ".jpg",
    "audio": ".ogg",
    "video": ".mp4",
    "document": ".pdf",
}


class MediaUploadError(Exception):
    pass


def normalize_media_path(path: str) -> str:
    normalized = (path or "").strip().lstrip("/")
    return normalized.replace("\\", "/")


def sign_media_path(path: str, expires: int, secret: str) -> str:
    payload = f"{path}:{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_signed_media_url(relative_path: str, *, secret: str, base_url: str, ttl_seconds: int = 3600) -> str:
    expires = int(time.time()) + max(int(ttl_seconds), 60)
    normalized_path = normalize_media_path(relative_path)
    signature = sign_media_path(normalized_path, expires, secret)
    quoted_path = quote(normalized_path, safe="/")
    return f"{base_url.rstrip('/')}/media/{quoted_path}?expires={expires}&sig={signature}"


def verify_signed_media_path(relative_path: str, expires: int, signature: str, secret: Optional[str]) -> bool:
    if not secret:
        logger.error("MEDIA_SIGNING_SECRET not configured")
        return False
    if not signature or expires < int(time.time()):
        return False
    expected = sign_media_path(normalize_media_path(relative_path), expires, secret)
    return hmac.compare_digest(expected, signature)


def guess_extension(mime: Optional[str], file_name: Optional[str], media_type: Optional[str] = None) -> str:
    if file_name:
        suffix = Path(file_name).suffix
        if suffix:
            return suffix
    if mime:
        ext = mimetypes.guess_extension(mime.split(";")[0].strip())
        if ext:
            return ext
    return FALLBACK_EXTENSIONS.get(media_type or "", ".bin")


def _safe_media_id(value: Optional[str]) -> str:
    if not value:
        return uuid4().hex
    cleaned = re.sub(r"[^a-zA-Z0-9_-]", "", value)
    return cleaned or uuid4().hex


class MediaStore(ABC):
    @abstractmethod
    async def upload(
        self,
        media_id: str,
        mime_hint: Optional[str] = None,
        filename: Optional[str] = None,
        media_type: Optional[str] = None,
    ) -> str:
        """Persist an inbound attachment and return a URL operators can open."""


class GraphMediaStore(MediaStore):
    def __init__(
        self,
        *,
        token: Optional[str],
        storage_dir: str,
        signing_secret: Optional[str],
        public_base_url: str,
        api_version: str = "v22.0",
        graph_base_url: str = "https://graph.facebook.com",
        url_ttl_seconds: int = 3600,
        max_bytes: int = 16 * 1024 * 1024,
        timeout_seconds: float = 15.0,
    ):
        self.token = token
        self.storage_dir = Path(storage_dir)
        self.signing_secret = signing_secret
        self.public_base_url = public_base_url
        self.api_version = api_version
        self.graph_base_url = graph_base_url.rstrip("/")
        self.url_ttl_seconds = url_ttl_seconds
        self.max_bytes = max_bytes
        self.timeout_seconds = timeout_seconds

    async def _resolve_download(self, client: httpx.AsyncClient, media_id: str) -> dict:
        response = await client.get(
            f"{self.graph_base_url}/{self.api_version}/{media_id}",
            headers={"Authorization": f"Bearer {self.token}"},
        )
        if response.status_code != 200:
            raise MediaUploadError(f"Media lookup failed: {response.status_code}")
        data = response.json()
        if not data.get("url"):
            raise MediaUploadError("Media lookup returned no url")
        return data

    async def upload(
        self,
        media_id: str,
        mime_hint: Optional[str] = None,
        filename: Optional[str] = None,
        media_type: Optional[str] = None,
    ) -> str:
        if not self.token:
            raise MediaUploadError("WHATSAPP_TOKEN not configured")
        if not self.signing_secret:
            raise MediaUploadError("MEDIA_SIGNING_SECRET not configured")
        if not media_id:
            raise MediaUploadError("media id is required")

        day = datetime.now(timezone.utc).strftime("%Y%m%d")
        target_dir = self.storage_dir / day
        target_dir.mkdir(parents=True, exist_ok=True)

        size_bytes = 0
        target_path: Optional[Path] = None
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                info = await self._resolve_download(client, media_id)
                mime = info.get("mime_type") or mime_hint
                target_path = target_dir / f"{_safe_media_id(media_id)}{guess_extension(mime, filename, media_type)}"
                async with client.stream(
                    "GET",
                    info["url"],
                    headers={"Authorization": f"Bearer {self.token}"},
                ) as response:
                    response.raise_for_status()
                    with target_path.open("wb") as handle:
                        async for chunk in response.aiter_bytes():
                            if not chunk:
                                continue
                            size_bytes += len(chunk)
                            if size_bytes > self.max_bytes:
                                raise MediaUploadError("Media too large")
                            handle.write(chunk)
        except MediaUploadError:
            if target_path is not None and target_path.exists():
                target_path.unlink()
            raise
        except httpx.HTTPError as e:
            if target_path is not None and target_path.exists():
                target_path.unlink()
            raise MediaUploadError(f"Media download failed: {e}") from e

        relative_path = target_path.relative_to(self.storage_dir).as_posix()
        logger.info(
            "Inbound media stored",
            extra={"context": {"media_id": media_id, "path": relative_path, "size_bytes": size_bytes}},
        )
        return build_signed_media_url(
            relative_path,
            secret=self.signing_secret,
            base_url=self.public_base_url,
            ttl_seconds=self.url_ttl_seconds,
        )
