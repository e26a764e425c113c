from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from io import BytesIO

from PIL import Image, ImageOps

from portfolio.core.config import settings
from portfolio.services.image_codecs import register_optional_image_codecs

logger = logging.getLogger(__name__)

OUTPUT_FORMAT = "JPEG"
OUTPUT_CONTENT_TYPE = "image/jpeg"


@dataclass(frozen=True)
class CompressionPolicy:
    byte_budget: int
    max_dimension: int
    quality: int

    @classmethod
    def from_settings(cls) -> "CompressionPolicy":
        return cls(
            byte_budget=settings.COMPRESSION_BYTE_BUDGET,
            max_dimension=settings.COMPRESSION_MAX_DIMENSION,
            quality=settings.COMPRESSION_QUALITY,
        )

    def needs_reduction(self, size: int) -> bool:
        return size > self.byte_budget


def _reencode(image_bytes: bytes, max_dimension: int, quality: int) -> bytes:
    register_optional_image_codecs()
    output_buffer = BytesIO()

    with Image.open(BytesIO(image_bytes)) as image:
        image = ImageOps.exif_transpose(image)
        image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
        image.convert("RGB").save(output_buffer, format=OUTPUT_FORMAT, quality=quality, optimize=True)

    return output_buffer.getvalue()


def reduce_image(image_bytes: bytes, policy: CompressionPolicy) -> bytes:
    """Shrink an image that is over the byte budget.

    Files within budget come back untouched. Oversized files are re-encoded as
    JPEG with the long edge capped; if that fails or does not shrink the file,
    the original bytes are returned.
    """
    if not policy.needs_reduction(len(image_bytes)):
        return image_bytes

    try:
        reduced = _reencode(image_bytes, policy.max_dimension, policy.quality)
    except (OSError, ValueError, MemoryError, Image.DecompressionBombError) as exc:
        logger.warning("compression failed, keeping original bytes: %s", exc)
        return image_bytes

    if len(reduced) >= len(image_bytes):
        logger.info(
            "compression did not shrink file original=%s reduced=%s", len(image_bytes), len(reduced)
        )
        return image_bytes

    logger.info("compressed file original=%s reduced=%s", len(image_bytes), len(reduced))
    return reduced


async def reduce_image_async(
    image_bytes: bytes,
    policy: CompressionPolicy,
    executor: Executor | None = None,
) -> bytes:
    if not policy.needs_reduction(len(image_bytes)):
        return image_bytes
    if executor is None:
        return await asyncio.to_thread(reduce_image, image_bytes, policy)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, reduce_image, image_bytes, policy)
