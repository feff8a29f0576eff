"""Structural and security checks on the raw upload bytes.

Checks run in a fixed order and stop at the first failure. Nothing here
decodes pixels: Pillow's ``Image.open`` only parses the header, which is all
the dimension probe needs.
"""
import os
from io import BytesIO
from typing import Optional

from PIL import Image

from ..core.config import Settings, settings as default_settings
from .types import ValidationOutcome

MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}

# Acceptable image types
CTYPE_TO_EXTS = {
    "image/jpeg": {".jpg", ".jpeg"},
    "image/png": {".png"},
    "image/gif": {".gif"},
    "image/webp": {".webp"},
}

PIL_FORMAT_TO_MIME = {"JPEG": "image/jpeg", "PNG": "image/png", "GIF": "image/gif", "WEBP": "image/webp"}


def normalize_mime(mime: Optional[str]) -> str:
    value = (mime or "").split(";", 1)[0].strip().lower()
    return MIME_ALIASES.get(value, value)


def sniff_mime(data: bytes) -> Optional[str]:
    """Return the MIME type implied by the leading bytes, if it is one we accept."""
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


class Validator:
    def __init__(self, settings: Settings = default_settings):
        self.settings = settings

    def validate(self, data: bytes, declared_mime: str, declared_filename: Optional[str]) -> ValidationOutcome:
        s = self.settings
        size = len(data or b"")

        if size < s.min_upload_bytes:
            return _fail("SizeError", f"File too small. Minimum size is {s.min_upload_bytes} bytes.")
        if size > s.max_upload_bytes:
            return _fail("SizeError", f"File too large. Maximum size is {s.max_upload_bytes // (1024 * 1024)}MB.")

        mime = normalize_mime(declared_mime)
        if mime not in CTYPE_TO_EXTS:
            allowed = ", ".join(sorted(CTYPE_TO_EXTS))
            return _fail("UnsupportedTypeError", f"Invalid file type. Allowed types: {allowed}")

        if declared_filename:
            ext = os.path.splitext(declared_filename.lower())[1]
            if ext not in CTYPE_TO_EXTS[mime]:
                return _fail(
                    "ExtensionMismatchError",
                    f"File extension {ext or '(none)'} does not match declared type {mime}.",
                )

        detected = sniff_mime(data)
        if detected != mime:
            return _fail(
                "SignatureMismatchError",
                "File signature does not match declared type. File may be corrupted or misnamed.",
                detected_mime=detected,
            )

        width, height = _probe_dimensions(data)
        if width is None or height is None:
            return _fail(
                "DimensionError", "Unable to read image dimensions. File may be corrupted.", detected_mime=detected
            )
        lo, hi = s.min_dimension, s.max_dimension
        if width < lo or height < lo:
            return _fail("DimensionError", f"Image too small. Minimum dimensions: {lo}x{lo}px",
                         width=width, height=height, detected_mime=detected)
        if width > hi or height > hi:
            return _fail("DimensionError", f"Image too large. Maximum dimensions: {hi}x{hi}px",
                         width=width, height=height, detected_mime=detected)

        return ValidationOutcome(ok=True, width=width, height=height, detected_mime=detected)


def _fail(kind: str, message: str, **kw) -> ValidationOutcome:
    return ValidationOutcome(ok=False, error_kind=kind, message=message, **kw)


def _probe_dimensions(data: bytes):
    try:
        with Image.open(BytesIO(data)) as img:
            if img.format not in PIL_FORMAT_TO_MIME:
                return None, None
            return img.size
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError):
        return None, None
