from __future__ import annotations

import base64
import math
from io import BytesIO
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from guiloop.util.log import get_logger

log = get_logger("guiloop.util.image")


def get_image_size(image_bytes: bytes) -> Optional[Tuple[int, int]]:
    """Returns (width, height), or None when the bytes are not a readable image."""
    if not image_bytes:
        return None
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            w, h = img.size
    except (UnidentifiedImageError, OSError) as e:
        log.warning("Failed to get image size from bytes (%dB): %s", len(image_bytes), e)
        return None
    if w <= 0 or h <= 0:
        return None
    return w, h


def image_mime(image_bytes: bytes) -> str:
    if image_bytes[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    return "image/jpeg"


def downscale(image_bytes: bytes, max_pixels: int, quality: int = 80) -> Tuple[bytes, int, int]:
    """
    Shrinks the image so that width*height <= max_pixels (aspect ratio kept)
    and returns (jpeg_bytes, width, height). Images already small enough are
    re-encoded unchanged in size.
    """
    img = Image.open(BytesIO(image_bytes)).convert("RGB")
    w, h = img.size

    if w * h > max_pixels:
        f = math.sqrt(max_pixels / (w * h))
        w, h = max(1, int(w * f)), max(1, int(h * f))
        img = img.resize((w, h), Image.Resampling.BICUBIC)

    out = BytesIO()
    img.save(out, format="JPEG", quality=quality)
    return out.getvalue(), w, h


def to_data_url(image_bytes: bytes) -> str:
    b64 = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{image_mime(image_bytes)};base64,{b64}"
