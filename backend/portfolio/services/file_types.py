from __future__ import annotations

import mimetypes

JPEG_MAGIC = b"\xFF\xD8\xFF"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
WEBP_RIFF = b"RIFF"
WEBP_TYPE = b"WEBP"
GIF87A = b"GIF87a"
GIF89A = b"GIF89a"
HEIF_BRANDS = {b"heic", b"heif", b"heix", b"hevc"}


def sniff_image_content_type(file_bytes: bytes) -> str | None:
    if file_bytes.startswith(JPEG_MAGIC):
        return "image/jpeg"
    if file_bytes.startswith(PNG_MAGIC):
        return "image/png"
    if file_bytes.startswith(GIF87A) or file_bytes.startswith(GIF89A):
        return "image/gif"
    if len(file_bytes) >= 12 and file_bytes[:4] == WEBP_RIFF and file_bytes[8:12] == WEBP_TYPE:
        return "image/webp"
    # HEIF/HEIC files usually contain `ftypheic`/`ftypheif` around byte offset 4.
    if len(file_bytes) >= 12 and file_bytes[4:8] == b"ftyp" and file_bytes[8:12] in HEIF_BRANDS:
        return "image/heic"
    return None


def detect_image_content_type(filename: str | None, content_type: str | None, file_bytes: bytes) -> str | None:
    """Declared ``image/*`` type, else a guess from the name, else magic bytes."""
    if content_type and content_type.lower().startswith("image/"):
        return content_type.lower()

    guessed, _ = mimetypes.guess_type(filename or "")
    if guessed and guessed.startswith("image/"):
        return guessed

    return sniff_image_content_type(file_bytes)


def magic_bytes_mismatch(content_type: str, file_bytes: bytes) -> bool:
    if content_type in {"image/jpeg", "image/jpg"}:
        return not file_bytes.startswith(JPEG_MAGIC)
    if content_type == "image/png":
        return not file_bytes.startswith(PNG_MAGIC)
    return False
