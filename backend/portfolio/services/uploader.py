from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from io import BytesIO
from typing import Protocol
from uuid import uuid4

import httpx
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image

from portfolio.core.config import settings
from portfolio.services import cloudinary_client, storage
from portfolio.services.image_codecs import register_optional_image_codecs

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
_RETRYABLE_S3_CODES = {"SlowDown", "Throttling", "RequestTimeout", "InternalError", "ServiceUnavailable"}
_ROTATED_ORIENTATIONS = {5, 6, 7, 8}
_EXIF_ORIENTATION_TAG = 0x0112


class AssetUploadError(RuntimeError):
    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class ProcessedAsset:
    id: str
    url: str
    width: int
    height: int
    bytes: int


class AssetUploader(Protocol):
    async def upload(self, data: bytes, folder: str, filename: str, content_type: str) -> ProcessedAsset:
        ...


def validate_asset(asset: ProcessedAsset) -> ProcessedAsset:
    if not asset.id or not asset.url:
        raise AssetUploadError("Asset store returned an asset without id or url.")
    if asset.width <= 0 or asset.height <= 0:
        raise AssetUploadError(f"Asset store returned invalid dimensions for {asset.id}.")
    return asset


def read_dimensions(image_bytes: bytes) -> tuple[int, int]:
    register_optional_image_codecs()
    with Image.open(BytesIO(image_bytes)) as image:
        width, height = image.size
        orientation = image.getexif().get(_EXIF_ORIENTATION_TAG)
    if orientation in _ROTATED_ORIENTATIONS:
        return height, width
    return width, height


def _extension_for(filename: str, content_type: str) -> str:
    guessed = mimetypes.guess_extension(content_type or "")
    if guessed:
        return ".jpg" if guessed == ".jpe" else guessed
    suffix = filename.rsplit(".", 1)
    return f".{suffix[1].lower()}" if len(suffix) == 2 else ""


class R2AssetUploader:
    """Puts objects into the R2 bucket under ``<folder>/<uuid><ext>``.

    The object key is the asset id; dimensions are read from the bytes
    actually stored.
    """

    def __init__(self) -> None:
        storage.check_configuration()

    def _put(self, data: bytes, key: str, content_type: str) -> ProcessedAsset:
        width, height = read_dimensions(data)
        storage.upload_file(data, key, content_type)
        return ProcessedAsset(id=key, url=storage.public_url(key), width=width, height=height, bytes=len(data))

    async def upload(self, data: bytes, folder: str, filename: str, content_type: str) -> ProcessedAsset:
        key = f"{folder}/{uuid4().hex}{_extension_for(filename, content_type)}"
        try:
            asset = await asyncio.to_thread(self._put, data, key, content_type)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            error_code = error.get("Code", "UnknownError")
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
            if error_code == "AccessDenied":
                raise AssetUploadError(
                    "Upload storage access denied. Check R2 token permissions and bucket name."
                ) from exc
            raise AssetUploadError(
                f"Upload to storage failed: {error_code}",
                retryable=error_code in _RETRYABLE_S3_CODES or status >= 500,
            ) from exc
        except BotoCoreError as exc:
            raise AssetUploadError(f"Upload to storage failed: {exc.__class__.__name__}", retryable=True) from exc
        except (OSError, ValueError) as exc:
            raise AssetUploadError(f"Could not read image dimensions: {exc}") from exc
        return validate_asset(asset)


class CloudinaryAssetUploader:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        cloudinary_client.check_configuration()
        self._transport = transport

    async def upload(self, data: bytes, folder: str, filename: str, content_type: str) -> ProcessedAsset:
        try:
            payload = await cloudinary_client.upload_image(
                data, folder, filename, content_type, transport=self._transport
            )
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise AssetUploadError(
                f"Upload to storage failed: HTTP {status}",
                retryable=status in _RETRYABLE_STATUS_CODES,
            ) from exc
        except httpx.HTTPError as exc:
            raise AssetUploadError(f"Upload to storage failed: {exc.__class__.__name__}", retryable=True) from exc
        except ValueError as exc:
            raise AssetUploadError(f"Asset store returned an unreadable response: {exc}") from exc

        try:
            asset = ProcessedAsset(
                id=str(payload.get("public_id") or ""),
                url=str(payload.get("secure_url") or payload.get("url") or ""),
                width=int(payload.get("width") or 0),
                height=int(payload.get("height") or 0),
                bytes=int(payload.get("bytes") or len(data)),
            )
        except (TypeError, ValueError) as exc:
            raise AssetUploadError(f"Asset store returned an unreadable response: {exc}") from exc
        return validate_asset(asset)


def get_asset_uploader() -> AssetUploader:
    """Build the uploader selected by ``ASSET_STORE``.

    Raises ``ValueError`` when the store is unknown or not configured.
    """
    backend = settings.ASSET_STORE.lower()
    if backend == "r2":
        return R2AssetUploader()
    if backend == "cloudinary":
        return CloudinaryAssetUploader()
    raise ValueError(f"Unknown ASSET_STORE: {settings.ASSET_STORE}")
