from __future__ import annotations

import logging

from pillow_heif import register_heif_opener

logger = logging.getLogger(__name__)

_HEIF_REGISTERED = False


def register_optional_image_codecs() -> None:
    global _HEIF_REGISTERED
    if _HEIF_REGISTERED:
        return
    register_heif_opener()
    logger.debug("heif opener registered")
    _HEIF_REGISTERED = True
