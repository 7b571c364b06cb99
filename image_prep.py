"""
image_prep.py - Shrink and re-encode photos before they go to a provider.

Phone photos are routinely 4000px+ and several megabytes; providers bill
and time out on payload size. Images are fitted inside max_width x
max_height, rotated per EXIF, converted to RGB and re-encoded as JPEG.
"""

from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, ImageOps, UnidentifiedImageError

from logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_WIDTH = 1280
DEFAULT_MAX_HEIGHT = 720
DEFAULT_QUALITY = 80


@dataclass(frozen=True)
class PreparedImage:
    data: bytes
    mime_type: str
    width: int = 0
    height: int = 0
    optimized: bool = False


def detect_mime_type(data: bytes) -> str:
    """Best-effort MIME type from magic bytes; defaults to JPEG."""
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith(b"GIF8"):
        return "image/gif"
    return "image/jpeg"


def prepare_image(
    data: bytes,
    max_width: int = DEFAULT_MAX_WIDTH,
    max_height: int = DEFAULT_MAX_HEIGHT,
    quality: int = DEFAULT_QUALITY,
) -> PreparedImage:
    """Return a resized JPEG; undecodable input comes back unchanged."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            original_size = image.size
            image = ImageOps.exif_transpose(image)
            if image.mode != "RGB":
                image = image.convert("RGB")
            image.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)

            output = io.BytesIO()
            image.save(output, format="JPEG", quality=quality, optimize=True)
            width, height = image.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        logger.warning(
            "image_prep_failed | bytes=%s | error_type=%s | error=%s | fallback=original",
            len(data),
            type(exc).__name__,
            exc,
        )
        return PreparedImage(data=data, mime_type=detect_mime_type(data))

    prepared = output.getvalue()
    logger.debug(
        "image_prepared | original=%sx%s | prepared=%sx%s | bytes_in=%s | bytes_out=%s",
        original_size[0],
        original_size[1],
        width,
        height,
        len(data),
        len(prepared),
    )
    return PreparedImage(data=prepared, mime_type="image/jpeg", width=width, height=height, optimized=True)
