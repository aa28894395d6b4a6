"""Content sniffing for media moving between QQ and Matrix."""

from __future__ import annotations

import functools
import io
import mimetypes

from loguru import logger
from PIL import Image, UnidentifiedImageError

DEFAULT_MIME = "application/octet-stream"

# (offset, magic, mime). Checked before Pillow so voice and video never reach the image decoder.
_SIGNATURES: tuple[tuple[int, bytes, str], ...] = (
    (0, b"\x89PNG\r\n\x1a\n", "image/png"),
    (0, b"\xff\xd8\xff", "image/jpeg"),
    (0, b"GIF87a", "image/gif"),
    (0, b"GIF89a", "image/gif"),
    (0, b"BM", "image/bmp"),
    (0, b"#!SILK", "audio/silk"),
    (1, b"#!SILK", "audio/silk"),
    (0, b"#!AMR", "audio/amr"),
    (0, b"OggS", "audio/ogg"),
    (0, b"ID3", "audio/mpeg"),
    (0, b"\x1aE\xdf\xa3", "video/webm"),
    (4, b"ftyp", "video/mp4"),
    (0, b"%PDF", "application/pdf"),
    (0, b"PK\x03\x04", "application/zip"),
)


def sniff_mime(data: bytes, filename: str | None = None) -> str:
    """Best-effort mime type from magic bytes, then Pillow, then the filename."""
    if not data:
        return DEFAULT_MIME
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        return "audio/wav"
    for offset, magic, mime in _SIGNATURES:
        if data[offset : offset + len(magic)] == magic:
            return mime

    try:
        with Image.open(io.BytesIO(data)) as img:
            mime = Image.MIME.get(img.format or "")
            if mime:
                return mime
    except (UnidentifiedImageError, OSError, ValueError):
        pass

    if filename:
        guessed, _ = mimetypes.guess_type(filename)
        if guessed:
            return guessed
    return DEFAULT_MIME


def image_dimensions(data: bytes) -> tuple[int, int]:
    """Width and height of an image, or ``(0, 0)`` when Pillow cannot read it."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return int(img.width), int(img.height)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.debug("Could not read image dimensions: {}", e)
        return 0, 0


def extension_for(mime: str) -> str:
    """File extension for a mime type, including the dot; empty when unknown."""
    if mime == "audio/silk":
        return ".silk"
    if mime == "audio/ogg":
        return ".ogg"
    return mimetypes.guess_extension(mime) or ""


@functools.cache
def placeholder_jpeg() -> bytes:
    """A 1x1 white JPEG used as the thumbnail for videos sent without one."""
    buf = io.BytesIO()
    Image.new("L", (1, 1), 255).save(buf, format="JPEG")
    return buf.getvalue()
