from __future__ import annotations

import asyncio
import os
from io import BytesIO

import piexif
from PIL import Image

from portfolio.services.uploader import AssetUploadError, ProcessedAsset


def make_jpeg(size: tuple[int, int] = (32, 24), exif: dict | None = None, color: str = "navy") -> bytes:
    buffer = BytesIO()
    image = Image.new("RGB", size, color)
    if exif is not None:
        image.save(buffer, format="JPEG", exif=piexif.dump(exif))
    else:
        image.save(buffer, format="JPEG")
    return buffer.getvalue()


def make_noise_png(size: tuple[int, int] = (512, 384)) -> bytes:
    buffer = BytesIO()
    image = Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class FakeUploader:
    """In-process asset store that records calls and concurrency."""

    def __init__(
        self,
        fail_names: set[str] | None = None,
        transient_failures: dict[str, int] | None = None,
        delays: dict[str, float] | None = None,
    ) -> None:
        self.fail_names = fail_names or set()
        self.transient_failures = dict(transient_failures or {})
        self.delays = delays or {}
        self.calls: list[tuple[str, str, int]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def upload(self, data: bytes, folder: str, filename: str, content_type: str) -> ProcessedAsset:
        self.calls.append((filename, folder, len(data)))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(filename, 0))
            if filename in self.fail_names:
                raise AssetUploadError("simulated transport error")
            if self.transient_failures.get(filename, 0) > 0:
                self.transient_failures[filename] -= 1
                raise AssetUploadError("simulated throttling", retryable=True)
        finally:
            self.in_flight -= 1

        with Image.open(BytesIO(data)) as image:
            width, height = image.size
        asset_id = f"{folder}/{len(self.calls)}-{filename}"
        return ProcessedAsset(
            id=asset_id,
            url=f"https://cdn.example.test/{asset_id}",
            width=width,
            height=height,
            bytes=len(data),
        )
