from __future__ import annotations

import logging

import httpx

from portfolio.core.config import settings

_TIMEOUT_SECONDS = 60.0
_API_BASE = "https://api.cloudinary.com/v1_1"
logger = logging.getLogger(__name__)


def check_configuration() -> None:
    if not settings.CLOUDINARY_CLOUD_NAME or not settings.CLOUDINARY_UPLOAD_PRESET:
        raise ValueError("CLOUDINARY_CLOUD_NAME and CLOUDINARY_UPLOAD_PRESET are required.")


def _upload_url() -> str:
    return f"{_API_BASE}/{settings.CLOUDINARY_CLOUD_NAME}/image/upload"


async def upload_image(
    image_bytes: bytes,
    folder: str,
    filename: str,
    content_type: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Unsigned upload through an upload preset.

    Returns the decoded response body; raises ``httpx.HTTPError`` on transport
    failures and non-2xx responses.
    """
    check_configuration()
    files = {"file": (filename, image_bytes, content_type)}
    data = {"upload_preset": settings.CLOUDINARY_UPLOAD_PRESET, "folder": folder}

    async with httpx.AsyncClient(timeout=_TIMEOUT_SECONDS, transport=transport) as client:
        response = await client.post(_upload_url(), data=data, files=files)
        response.raise_for_status()
        payload = response.json()

    logger.debug("cloudinary upload folder=%s public_id=%s", folder, payload.get("public_id"))
    return payload
