"""Embedded caption/keyword metadata for IPTC Editor.

Reads and writes the two places a caption lives in a JPEG:
- EXIF 0th IFD XPSubject (UTF-16LE bytes), via piexif
- IPTC caption/abstract + repeatable keywords (2:25), via iptcinfo3

Keywords are written one IPTC entry per keyword, each cut to the 64-byte
field limit, never more than the working keyword cap. Codec failures
propagate to the caller.
"""

from __future__ import annotations

import io
import logging
import tempfile
from pathlib import Path
from typing import Any, Iterable

import piexif
from iptcinfo3 import IPTCInfo
from PIL import Image

from iptc_editor.models import ImageMetadata

logger = logging.getLogger(__name__)

# iptcinfo3 warns on every file without an APP13 block
logging.getLogger("iptcinfo").setLevel(logging.ERROR)

IPTC_CHARSET = "utf_8"
MAX_KEYWORD_BYTES = 64
MAX_CAPTION_CHARS = 2000

MEDIA_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "TIFF": "image/tiff",
}


def identify_image(image_bytes: bytes) -> str:
    """Return the media type of image bytes.

    Raises:
        PIL.UnidentifiedImageError: If the bytes are not an image Pillow knows.
    """
    with Image.open(io.BytesIO(image_bytes)) as img:
        fmt = img.format
    return MEDIA_TYPES.get(fmt or "", "image/jpeg")


def _iptc_text(value: Any) -> str:
    """Normalize an iptcinfo3 value (bytes when no charset was declared)."""
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(IPTC_CHARSET, errors="replace")
    return str(value)


def _truncate_bytes(text: str, limit: int) -> str:
    """Cut text to at most `limit` UTF-8 bytes without splitting a character."""
    return text.encode("utf-8")[:limit].decode("utf-8", errors="ignore")


def keyword_entries(keywords: Iterable[str], limit: int) -> list[str]:
    """Build the IPTC keyword records that will be written.

    Each keyword becomes its own record, trimmed and capped at 64 bytes.
    Duplicates (including ones created by the cut) collapse, and at most
    `limit` records are returned.
    """
    entries: list[str] = []
    for keyword in keywords:
        entry = _truncate_bytes(keyword.strip(), MAX_KEYWORD_BYTES).strip()
        if entry and entry not in entries:
            entries.append(entry)
        if len(entries) >= limit:
            break
    return entries


def read_xp_subject(image_bytes: bytes) -> str:
    """Read the EXIF XPSubject caption, or '' when absent."""
    exif_dict = piexif.load(image_bytes)
    raw = exif_dict.get("0th", {}).get(piexif.ImageIFD.XPSubject)
    if not raw:
        return ""
    if isinstance(raw, int):
        raw = (raw,)
    return bytes(raw).decode("utf-16le", errors="replace").rstrip("\x00")


def _read_iptc(image_bytes: bytes) -> tuple[str, list[str]]:
    """Read IPTC caption/abstract and keywords from JPEG bytes."""
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "asset.jpg"
        path.write_bytes(image_bytes)
        info = IPTCInfo(str(path), force=True, inp_charset=IPTC_CHARSET)
        caption = _iptc_text(info["caption/abstract"])
        keywords = [_iptc_text(k) for k in (info["keywords"] or [])]
    return caption, keywords


def extract_metadata(image_bytes: bytes) -> ImageMetadata:
    """Extract the existing caption and keywords from an image.

    The IPTC caption wins; the EXIF XPSubject this editor also writes is the
    fallback. Images other than JPEG carry nothing we read and come back empty.

    Args:
        image_bytes: Raw bytes of the uploaded file.

    Returns:
        ImageMetadata with caption '' and keywords [] when nothing is embedded.

    Raises:
        PIL.UnidentifiedImageError: If the bytes are not an image.
    """
    media_type = identify_image(image_bytes)
    if media_type != "image/jpeg":
        logger.debug("No IPTC support for %s, skipping extraction", media_type)
        return ImageMetadata()

    caption, keywords = _read_iptc(image_bytes)
    if not caption:
        caption = read_xp_subject(image_bytes)

    logger.debug("Extracted caption=%r, %d keywords", caption[:40], len(keywords))
    return ImageMetadata(caption=caption, keywords=keywords)


def write_metadata(
    image_bytes: bytes,
    caption: str,
    keywords: list[str],
    keyword_limit: int = 25,
) -> bytes:
    """Write caption and keywords into a JPEG and return the new bytes.

    Args:
        image_bytes: Original JPEG bytes.
        caption: Caption for XPSubject and IPTC caption/abstract.
        keywords: Working keyword list.
        keyword_limit: Maximum number of keyword records.

    Returns:
        Re-encoded JPEG bytes.

    Raises:
        ValueError: If the image is not a JPEG.
        piexif.InvalidImageDataError: If the EXIF container cannot be decoded.
    """
    media_type = identify_image(image_bytes)
    if media_type != "image/jpeg":
        raise ValueError(f"Cannot embed IPTC metadata in {media_type}, JPEG required")

    exif_dict = piexif.load(image_bytes)
    zeroth = exif_dict.setdefault("0th", {})
    if caption:
        zeroth[piexif.ImageIFD.XPSubject] = caption.encode("utf-16le")
    else:
        zeroth.pop(piexif.ImageIFD.XPSubject, None)

    exif_bytes = piexif.dump(exif_dict)
    spliced = io.BytesIO()
    piexif.insert(exif_bytes, image_bytes, spliced)

    entries = keyword_entries(keywords, keyword_limit)
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "asset.jpg"
        path.write_bytes(spliced.getvalue())
        info = IPTCInfo(
            str(path), force=True, inp_charset=IPTC_CHARSET, out_charset=IPTC_CHARSET
        )
        info["caption/abstract"] = caption[:MAX_CAPTION_CHARS]
        info["keywords"] = entries
        info.save()
        result = path.read_bytes()

    logger.info(
        "Wrote caption (%d chars) and %d keywords into %d-byte image",
        len(caption), len(entries), len(result),
    )
    return result
