"""Decode input images into bounded RGBA pixel buffers."""
import io
import logging
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from pixellite.config import MAX_DIMENSION
from pixellite.errors import DecodeError
from pixellite.processing.models import PIL_FORMAT_TO_MIME, PixelBuffer

logger = logging.getLogger("pixellite.decoder")


def bound_dimensions(width: int, height: int, max_dimension: int = MAX_DIMENSION) -> Tuple[int, int]:
    """
    Scale (width, height) down so the larger side equals max_dimension, keeping aspect ratio.
    Sizes already within the bound are returned unchanged.
    """
    if width <= max_dimension and height <= max_dimension:
        return width, height
    if width > height:
        return max_dimension, max(1, int(round(height / width * max_dimension)))
    return max(1, int(round(width / height * max_dimension))), max_dimension


def open_image(data: bytes) -> Image.Image:
    """Open and fully load image bytes. Raises DecodeError for unreadable input."""
    if not data:
        raise DecodeError("Empty image data")
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Could not decode image: {e}") from e
    return img


def sniff_mime(data: bytes, fallback: str = "application/octet-stream") -> str:
    """Mime type from the image header, without decoding pixels."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return PIL_FORMAT_TO_MIME.get(img.format or "", fallback)
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return fallback


def decode_image(data: bytes, mime_type: Optional[str] = None, max_dimension: int = MAX_DIMENSION) -> PixelBuffer:
    """Decode bytes to an RGBA buffer whose largest side is at most max_dimension."""
    img = open_image(data)
    source_mime = mime_type or PIL_FORMAT_TO_MIME.get(img.format or "", "")
    natural = img.size
    if img.mode != "RGBA":
        img = img.convert("RGBA")
    target = bound_dimensions(natural[0], natural[1], max_dimension)
    if target != natural:
        logger.info("Downscaling %sx%s to %sx%s", natural[0], natural[1], target[0], target[1])
        img = img.resize(target, Image.Resampling.LANCZOS)
    return PixelBuffer(width=img.width, height=img.height, data=img.tobytes(), source_mime=source_mime)


def to_image(buffer: PixelBuffer) -> Image.Image:
    return Image.frombytes("RGBA", (buffer.width, buffer.height), buffer.data)
