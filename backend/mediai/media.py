"""Uploads medical images to the media host (Cloudinary unsigned upload) and returns a public URL."""

import logging
from typing import Optional

import httpx

from mediai.config import CLOUDINARY_CLOUD_NAME, CLOUDINARY_UPLOAD_PRESET
from mediai.errors import InvalidArgument

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class MediaUploadError(RuntimeError):
    pass


class MediaHost:
    def __init__(
        self,
        cloud_name: Optional[str] = CLOUDINARY_CLOUD_NAME,
        upload_preset: Optional[str] = CLOUDINARY_UPLOAD_PRESET,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.cloud_name = cloud_name
        self.upload_preset = upload_preset
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))

    async def aclose(self):
        await self._client.aclose()

    async def upload(self, data: bytes, filename: str, content_type: str) -> str:
        if content_type not in ALLOWED_MIME_TYPES:
            raise InvalidArgument(f"Unsupported file type: {content_type}")
        if not data:
            raise InvalidArgument("Uploaded file is empty")
        if len(data) > MAX_UPLOAD_BYTES:
            raise InvalidArgument("Uploaded file is larger than 10MB")
        if not self.cloud_name or not self.upload_preset:
            raise MediaUploadError("Media host is not configured")

        url = f"https://api.cloudinary.com/v1_1/{self.cloud_name}/image/upload"
        try:
            response = await self._client.post(
                url,
                data={"upload_preset": self.upload_preset},
                files={"file": (filename, data, content_type)},
            )
        except httpx.HTTPError as e:
            raise MediaUploadError(f"Upload failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("error", {}).get("message")
            except ValueError:
                detail = None
            raise MediaUploadError(f"Upload failed: {detail or response.reason_phrase}")

        secure_url = response.json().get("secure_url")
        if not secure_url:
            raise MediaUploadError("Upload failed: no URL returned")
        logger.info(f"Uploaded {filename} to {secure_url}")
        return secure_url
