"""Document kind detection and image normalisation using Pillow.

Provides:
- Byte-signature detection of PDFs and supported image formats
- Orientation fix and downscaling before OCR
"""

from __future__ import annotations

import io
import logging
from enum import Enum

from PIL import Image, ImageOps

from ai_gateway.llm.errors import UnsupportedDocumentError

logger = logging.getLogger(__name__)

# OCR providers reject very large images; 4000px keeps small print legible
MAX_OCR_DIMENSION = 4000
JPEG_QUALITY = 90
EXIF_ORIENTATION = 0x0112


class DocumentKind(str, Enum):
    """Supported upload formats."""

    pdf = "pdf"
    png = "png"
    jpeg = "jpeg"
    webp = "webp"
    gif = "gif"

    @property
    def mime_type(self) -> str:
        if self is DocumentKind.pdf:
            return "application/pdf"
        return f"image/{self.value}"

    @property
    def is_image(self) -> bool:
        return self is not DocumentKind.pdf


_MIME_KINDS = {
    "application/pdf": DocumentKind.pdf,
    "image/png": DocumentKind.png,
    "image/jpeg": DocumentKind.jpeg,
    "image/jpg": DocumentKind.jpeg,
    "image/webp": DocumentKind.webp,
    "image/gif": DocumentKind.gif,
}


def sniff_kind(data: bytes) -> DocumentKind | None:
    """Identify a document from its magic bytes."""
    if data.startswith(b"%PDF-"):
        return DocumentKind.pdf
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return DocumentKind.png
    if data.startswith(b"\xff\xd8\xff"):
        return DocumentKind.jpeg
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return DocumentKind.webp
    if data.startswith((b"GIF87a", b"GIF89a")):
        return DocumentKind.gif
    return None


def detect_document_kind(data: bytes, mime_hint: str | None = None) -> DocumentKind:
    """Determine the document kind, preferring the byte signature over the hint.

    Raises:
        UnsupportedDocumentError: Neither the signature nor the hint is supported.
    """
    kind = sniff_kind(data)
    if kind is not None:
        return kind

    if mime_hint:
        hinted = _MIME_KINDS.get(mime_hint.split(";")[0].strip().lower())
        if hinted is not None:
            logger.debug(f"No known signature, trusting mime hint {mime_hint}")
            return hinted

    raise UnsupportedDocumentError(
        f"Unsupported document (mime hint {mime_hint!r}, {len(data)} bytes)"
    )


def normalize_for_ocr(data: bytes, max_dimension: int = MAX_OCR_DIMENSION) -> tuple[bytes, str]:
    """Apply EXIF orientation and cap the largest dimension.

    Animated GIFs keep only their first frame. Images that need no change are
    returned as-is.

    Args:
        data: Raw image bytes.
        max_dimension: Maximum width or height in pixels.

    Returns:
        Tuple of (image_bytes, media_type).

    Raises:
        ValueError: If input is not a valid image.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "PNG").upper()
            rotated = img.getexif().get(EXIF_ORIENTATION, 1) != 1
            out = ImageOps.exif_transpose(img) if rotated else img
            width, height = out.size
            needs_resize = width > max_dimension or height > max_dimension

            if not needs_resize and not rotated and fmt in ("PNG", "JPEG", "WEBP"):
                return data, f"image/{fmt.lower()}"

            if needs_resize:
                ratio = min(max_dimension / width, max_dimension / height)
                new_size = (int(width * ratio), int(height * ratio))
                out = out.resize(new_size, Image.Resampling.LANCZOS)
                logger.debug(f"Resized image from {width}x{height} to {new_size[0]}x{new_size[1]}")

            output = io.BytesIO()
            if fmt == "JPEG":
                if out.mode not in ("RGB", "L"):
                    out = out.convert("RGB")
                out.save(output, format="JPEG", quality=JPEG_QUALITY, optimize=True)
                return output.getvalue(), "image/jpeg"

            if out.mode not in ("RGB", "RGBA", "L", "LA"):
                out = out.convert("RGBA")
            out.save(output, format="PNG", optimize=True)
            return output.getvalue(), "image/png"

    except Exception as e:
        raise ValueError(f"Cannot normalize image: {e}") from e
