import logging
import os
import re
import secrets
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

import magic
from PIL import Image

from app.core.config import Settings
from app.core.errors import (
    DisallowedExtension, DisallowedMimeType, MalformedImage, SizeExceeded
)

logger = logging.getLogger(__name__)

# libmagic needs no more than this to classify the formats we accept
SNIFF_BYTES = 2048
DEFAULT_BASE_NAME = "upload"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")

# Pillow formats whose MIME type differs from what libmagic reports for the same file.
# Multi-picture JPEGs open as MPO but are plain JPEG on the wire.
_DECODED_MIME_EQUIVALENTS = {"image/mpo": "image/jpeg"}


@dataclass(frozen=True)
class UploadPolicy:
    max_size: int = 5 * 1024 * 1024
    allowed_extensions: FrozenSet[str] = frozenset({"jpg", "jpeg", "png", "pdf"})
    allowed_mime_types: FrozenSet[str] = frozenset({"image/jpeg", "image/png", "application/pdf"})

    @classmethod
    def from_settings(cls, settings: Settings) -> "UploadPolicy":
        return cls(
            max_size=settings.MAX_UPLOAD_SIZE,
            allowed_extensions=frozenset(e.lower().lstrip(".") for e in settings.ALLOWED_EXTENSIONS),
            allowed_mime_types=frozenset(m.lower() for m in settings.ALLOWED_MIME_TYPES),
        )


@dataclass(frozen=True)
class SanitizedName:
    base: str
    extension: str


@dataclass(frozen=True)
class ValidationOutcome:
    name: SanitizedName
    mime_type: str
    size: int
    dimensions: Optional[tuple] = field(default=None)


def sanitize_name(declared_name: str) -> SanitizedName:
    """
    Reduce an untrusted client file name to a safe base name and extension.

    Only the last path component survives; directory separators and
    traversal segments are dropped rather than escaped.
    """
    component = (declared_name or "").replace("\\", "/").split("/")[-1]
    cleaned = _UNSAFE_NAME_CHARS.sub("", component).lstrip(".")
    stem, dot, extension = cleaned.rpartition(".")
    if not dot:
        stem, extension = cleaned, ""
    stem = stem.strip(".")
    return SanitizedName(base=stem or DEFAULT_BASE_NAME, extension=extension.lower())


def unique_name(name: SanitizedName) -> str:
    token = secrets.token_hex(8)
    if name.extension:
        return f"{name.base}_{token}.{name.extension}"
    return f"{name.base}_{token}"


def check_extension(policy: UploadPolicy, name: SanitizedName) -> None:
    if name.extension not in policy.allowed_extensions:
        raise DisallowedExtension(
            f"Extension '{name.extension or '(none)'}' is not allowed. "
            f"Allowed: {', '.join(sorted(policy.allowed_extensions))}"
        )


def sniff_mime_type(path: str) -> str:
    """Detect the content type from the file's own bytes."""
    with open(path, "rb") as f:
        head = f.read(SNIFF_BYTES)
    try:
        return magic.from_buffer(head, mime=True).lower()
    except magic.MagicException as e:
        raise DisallowedMimeType(f"Content type could not be determined: {e}")


def check_mime_type(policy: UploadPolicy, mime_type: str) -> None:
    if mime_type not in policy.allowed_mime_types:
        raise DisallowedMimeType(
            f"Content type '{mime_type}' is not allowed. "
            f"Allowed: {', '.join(sorted(policy.allowed_mime_types))}"
        )


def check_size(policy: UploadPolicy, size: int) -> None:
    if size > policy.max_size:
        raise SizeExceeded(f"Upload is {size} bytes, maximum is {policy.max_size} bytes")


def check_image(path: str, mime_type: str) -> tuple:
    """Decode an image fully and return its (width, height)."""
    try:
        with Image.open(path) as img:
            img.verify()
        # verify() leaves the image unusable, reopen to decode pixel data
        with Image.open(path) as img:
            img.load()
            decoded_mime = Image.MIME.get(img.format)
            decoded_mime = _DECODED_MIME_EQUIVALENTS.get(decoded_mime, decoded_mime)
            width, height = img.size
    except (OSError, SyntaxError, ValueError, EOFError, Image.DecompressionBombError) as e:
        raise MalformedImage(f"Content is not a valid {mime_type} image: {e}")

    if decoded_mime and decoded_mime.lower() != mime_type:
        raise MalformedImage(f"Content decodes as {decoded_mime}, expected {mime_type}")
    if width <= 0 or height <= 0:
        raise MalformedImage(f"Image has invalid dimensions {width}x{height}")
    return width, height


def run_pipeline(policy: UploadPolicy, path: str, declared_name: str) -> ValidationOutcome:
    """
    Run the validation predicates against an assembled artifact, in order,
    stopping at the first failure.
    """
    name = sanitize_name(declared_name)
    check_extension(policy, name)

    mime_type = sniff_mime_type(path)
    check_mime_type(policy, mime_type)

    size = os.path.getsize(path)
    check_size(policy, size)

    dimensions = None
    if mime_type.startswith("image/"):
        dimensions = check_image(path, mime_type)

    logger.debug(f"Validated {declared_name!r} as {mime_type} ({size} bytes)")
    return ValidationOutcome(name=name, mime_type=mime_type, size=size, dimensions=dimensions)
