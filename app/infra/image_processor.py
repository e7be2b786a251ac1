# app/infra/image_processor.py
"""
Image handling for bot deliveries.

- Format detection from magic bytes (not extension or Content-Type)
- Durable base64 embedding for task content
- Re-encoding to progressive JPEG until the image fits the bot's size limit

Group bots reject images above roughly 1 MB, so anything larger is
re-encoded in steps of shrinking dimensions and quality.  Images larger
than ``image_max_file_size_mb`` are rejected outright.
"""
from __future__ import annotations

import base64
import hashlib
import io
from dataclasses import dataclass
from enum import Enum

from PIL import Image, ImageFile

from app.core.dispatch.domain import EmbeddedImage
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Reject truncated data rather than sending images with black bands.
ImageFile.LOAD_TRUNCATED_IMAGES = False

# Parsing limit only; output dimensions are capped by the compression steps.
Image.MAX_IMAGE_PIXELS = 50_000_000


class ImageError(Exception):
    """Base exception for image processing errors"""
    pass


class ImageTooLargeError(ImageError):
    """Image file size exceeds limit"""
    pass


class ImageInvalidFormatError(ImageError):
    """Image format not allowed or invalid"""
    pass


class AllowedFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    GIF = "gif"
    WEBP = "webp"


MAGIC_BYTES = {
    b'\xff\xd8\xff': AllowedFormat.JPEG,
    b'\x89PNG\r\n\x1a\n': AllowedFormat.PNG,
    b'GIF87a': AllowedFormat.GIF,
    b'GIF89a': AllowedFormat.GIF,
}

MIME_TYPES = {
    AllowedFormat.JPEG: "image/jpeg",
    AllowedFormat.PNG: "image/png",
    AllowedFormat.GIF: "image/gif",
    AllowedFormat.WEBP: "image/webp",
}


@dataclass(frozen=True)
class CompressionStep:
    max_side: int | None  # None keeps current dimensions
    quality: int


# Applied in order until the output fits the target size.
COMPRESSION_STEPS = (
    CompressionStep(max_side=2048, quality=80),
    CompressionStep(max_side=1024, quality=60),
    CompressionStep(max_side=None, quality=40),
    CompressionStep(max_side=800, quality=50),
)


def detect_format(data: bytes) -> AllowedFormat | None:
    """Detect image format from magic bytes."""
    for magic, fmt in MAGIC_BYTES.items():
        if data.startswith(magic):
            return fmt

    # RIFF....WEBP
    if data[:4] == b'RIFF' and len(data) > 11 and data[8:12] == b'WEBP':
        return AllowedFormat.WEBP

    return None


def detect_mime_type(data: bytes, fallback: str | None = None) -> str:
    fmt = detect_format(data)
    if fmt is not None:
        return MIME_TYPES[fmt]
    return fallback or "application/octet-stream"


def validate_size(data: bytes, max_bytes: int) -> None:
    if len(data) > max_bytes:
        raise ImageTooLargeError(
            f"Image size {len(data)} bytes exceeds limit of {max_bytes} bytes"
        )


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------

def embed_image(
    data: bytes,
    filename: str | None = None,
    mime_type: str | None = None,
    max_bytes: int | None = None,
) -> EmbeddedImage:
    """
    Encode raw bytes into the durable form stored inside task content.

    Raises:
        ImageError: empty data, unknown format, or over ``max_bytes``
    """
    if not data:
        raise ImageInvalidFormatError("Image is empty")
    if max_bytes is not None:
        validate_size(data, max_bytes)

    fmt = detect_format(data)
    if fmt is None:
        raise ImageInvalidFormatError("Unable to detect image format from file content")

    return EmbeddedImage(
        base64=base64.b64encode(data).decode("ascii"),
        mime_type=MIME_TYPES[fmt],
        filename=filename or f"image.{'jpg' if fmt is AllowedFormat.JPEG else fmt.value}",
        size_bytes=len(data),
    )


def image_md5(data: bytes) -> str:
    """Hex digest the bot API requires next to an image's base64."""
    return hashlib.md5(data).hexdigest()


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------

def _to_rgb(img: Image.Image) -> Image.Image:
    if img.mode in ("RGBA", "P", "LA"):
        # White background for transparency
        background = Image.new("RGB", img.size, (255, 255, 255))
        if img.mode != "RGBA":
            img = img.convert("RGBA")
        background.paste(img, mask=img.split()[-1])
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def _reencode(data: bytes, step: CompressionStep) -> bytes:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except Image.DecompressionBombError as e:
        raise ImageTooLargeError(f"Decompression bomb detected: {e}")
    except OSError as e:
        logger.warning(f"Image parsing error (possible malformed file): {e}")
        raise ImageInvalidFormatError("Failed to decode image: corrupted or malformed")

    if step.max_side is not None:
        # thumbnail() never enlarges
        img.thumbnail((step.max_side, step.max_side), Image.Resampling.LANCZOS)

    output = io.BytesIO()
    _to_rgb(img).save(output, format="JPEG", quality=step.quality, progressive=True, optimize=True)
    return output.getvalue()


def compress_for_webhook(data: bytes, target_bytes: int, max_bytes: int) -> bytes:
    """
    Shrink ``data`` until it is at most ``target_bytes``.

    Images already under the target are returned untouched.

    Raises:
        ImageTooLargeError: input above ``max_bytes`` or output still above target
        ImageInvalidFormatError: the bytes are not a decodable image
    """
    validate_size(data, max_bytes)
    if len(data) <= target_bytes:
        return data

    original_size = len(data)
    current = data
    for step in COMPRESSION_STEPS:
        current = _reencode(current, step)
        logger.debug(f"Compression step max_side={step.max_side} quality={step.quality} -> {len(current)} bytes")
        if len(current) <= target_bytes:
            logger.info(f"Image compressed: {original_size} -> {len(current)} bytes")
            return current

    raise ImageTooLargeError(
        f"Image could not be compressed under {target_bytes} bytes (last attempt {len(current)} bytes)"
    )
