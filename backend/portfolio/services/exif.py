from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from io import BytesIO

import exifread

logger = logging.getLogger(__name__)

EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"
_CAPTURE_TIME_TAGS = ("EXIF DateTimeOriginal", "EXIF DateTimeDigitized", "Image DateTime")


@dataclass(frozen=True)
class ExtractedMetadata:
    """Capture metadata read from an image's embedded EXIF block.

    Every field is optional; an image without EXIF yields an empty record.
    """

    camera_make: str | None = None
    camera_model: str | None = None
    lens: str | None = None
    aperture: str | None = None
    shutter_speed: str | None = None
    iso: str | None = None
    focal_length: str | None = None
    location: str | None = None
    date_taken: datetime | None = None

    @property
    def camera(self) -> str | None:
        if self.camera_make and self.camera_model:
            if self.camera_model.startswith(self.camera_make):
                return self.camera_model
            return f"{self.camera_make} {self.camera_model}"
        return self.camera_model or self.camera_make

    def is_empty(self) -> bool:
        return not any(value is not None for value in asdict(self).values())


def _to_float(value) -> float:
    if hasattr(value, "num") and hasattr(value, "den"):
        return float(value.num) / float(value.den)
    return float(value)


def _format_number(value: float) -> str:
    return f"{round(value, 2):g}"


def _dms_to_decimal(dms_values, ref: str | None) -> float | None:
    if not dms_values or len(dms_values) < 3:
        return None

    degrees = _to_float(dms_values[0])
    minutes = _to_float(dms_values[1])
    seconds = _to_float(dms_values[2])
    decimal = degrees + (minutes / 60.0) + (seconds / 3600.0)

    if ref in {"S", "W"}:
        decimal *= -1
    return decimal


def _get_tag_value(tags: dict, key: str):
    tag = tags.get(key)
    if tag is None:
        return None
    value = getattr(tag, "values", tag)
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _get_tag_text(tags: dict, key: str) -> str | None:
    tag = tags.get(key)
    if tag is None:
        return None
    text = str(tag).strip().strip("\x00").strip()
    return text or None


def _get_ref(tags: dict, key: str) -> str | None:
    value = _get_tag_value(tags, key)
    if value is None:
        return None
    return str(value)[:1].upper() or None


def format_aperture(f_number: float) -> str:
    return f"f/{_format_number(f_number)}"


def format_shutter_speed(exposure_seconds: float) -> str:
    if exposure_seconds < 1:
        return f"1/{round(1 / exposure_seconds)}"
    return _format_number(exposure_seconds)


def format_location(latitude: float, longitude: float) -> str:
    return f"{latitude:.6f}, {longitude:.6f}"


def _parse_capture_time(tags: dict) -> datetime | None:
    for key in _CAPTURE_TIME_TAGS:
        raw = _get_tag_text(tags, key)
        if not raw:
            continue
        try:
            return datetime.strptime(raw, EXIF_DATETIME_FORMAT)
        except ValueError:
            continue
    return None


_FIELD_ERRORS = (ArithmeticError, TypeError, ValueError, IndexError, AttributeError)


def _read_aperture(tags: dict) -> str | None:
    f_number = _get_tag_value(tags, "EXIF FNumber")
    if f_number is None or _to_float(f_number) <= 0:
        return None
    return format_aperture(_to_float(f_number))


def _read_shutter_speed(tags: dict) -> str | None:
    exposure = _get_tag_value(tags, "EXIF ExposureTime")
    if exposure is None or _to_float(exposure) <= 0:
        return None
    return format_shutter_speed(_to_float(exposure))


def _read_iso(tags: dict) -> str | None:
    iso = _get_tag_value(tags, "EXIF ISOSpeedRatings")
    if iso is None:
        iso = _get_tag_value(tags, "EXIF PhotographicSensitivity")
    return str(iso) if iso is not None else None


def _read_focal_length(tags: dict) -> str | None:
    focal = _get_tag_value(tags, "EXIF FocalLength")
    if focal is None or _to_float(focal) <= 0:
        return None
    return f"{_format_number(_to_float(focal))}mm"


def _read_location(tags: dict) -> str | None:
    latitude = _dms_to_decimal(
        getattr(tags.get("GPS GPSLatitude"), "values", None),
        _get_ref(tags, "GPS GPSLatitudeRef"),
    )
    longitude = _dms_to_decimal(
        getattr(tags.get("GPS GPSLongitude"), "values", None),
        _get_ref(tags, "GPS GPSLongitudeRef"),
    )
    if latitude is None or longitude is None:
        return None
    return format_location(latitude, longitude)


def _read_lens(tags: dict) -> str | None:
    return _get_tag_text(tags, "EXIF LensModel") or _get_tag_text(tags, "EXIF LensMake")


_FIELD_READERS = {
    "camera_make": lambda tags: _get_tag_text(tags, "Image Make"),
    "camera_model": lambda tags: _get_tag_text(tags, "Image Model"),
    "lens": _read_lens,
    "aperture": _read_aperture,
    "shutter_speed": _read_shutter_speed,
    "iso": _read_iso,
    "focal_length": _read_focal_length,
    "location": _read_location,
    "date_taken": _parse_capture_time,
}


def _read_metadata(tags: dict) -> ExtractedMetadata:
    # A malformed tag (zero denominator, short GPS triple) only drops its own field.
    fields = {}
    for name, reader in _FIELD_READERS.items():
        try:
            fields[name] = reader(tags)
        except _FIELD_ERRORS as exc:
            logger.warning("exif event=field_unreadable field=%s error=%s", name, exc)
            fields[name] = None
    return ExtractedMetadata(**fields)


def extract_metadata(image_bytes: bytes) -> ExtractedMetadata:
    """Read capture metadata from raw image bytes.

    Must run on the original bytes: re-encoding drops the EXIF block.
    Never raises; unreadable or missing metadata yields an empty record.
    """
    try:
        tags = exifread.process_file(BytesIO(image_bytes), details=False)
        return _read_metadata(tags)
    except Exception as exc:
        logger.warning("exif extraction failed: %s", exc)
        return ExtractedMetadata()
