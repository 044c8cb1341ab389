"""
media/avatars.py -- Avatar upload validation, resizing and storage.

Lifecycle of an uploaded avatar:
  1. validate()  -- MIME type must be image/*, size <= max_bytes, and Pillow
                    must be able to decode the bytes within a pixel budget.
                    Anything else raises AvatarError; nothing is written.
  2. save()      -- resize to a fixed width with proportional height, write to
                    <upload_dir>/<slug(name)>-<epoch ms>-<8 hex>.<mime subtype> and
                    return the public URL path recorded on the user row.
  3. discard()   -- remove a saved file when the user update that would
                    reference it fails.

Layer rule: imports only stdlib and Pillow.
"""

from __future__ import annotations

import io
import logging
import re
import secrets
import time
from pathlib import Path

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger("mingle.media.avatars")

# Pillow save format per MIME subtype; anything missing falls back to PNG.
_FORMATS = {
    "jpeg": "JPEG",
    "jpg": "JPEG",
    "png": "PNG",
    "gif": "GIF",
    "webp": "WEBP",
    "bmp": "BMP",
}

_SLUG_RE = re.compile(r"[^a-z0-9_-]+")


class AvatarError(ValueError):
    """An upload that cannot become an avatar. code is the API error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def _slug(name: str) -> str:
    slug = _SLUG_RE.sub("-", name.strip().lower()).strip("-")
    return slug or "user"


class AvatarPipeline:
    """Validates and stores avatar images under a static directory.

    Args:
        upload_dir: Filesystem directory the resized files are written to.
        url_prefix: Public URL path that serves upload_dir (e.g. /static/uploads/avatars).
        width:      Output width in pixels; height keeps the aspect ratio.
        max_bytes:  Largest accepted upload.
        max_pixels: Largest accepted source or resized image, in pixels.
    """

    def __init__(
        self,
        upload_dir: str | Path,
        url_prefix: str,
        width: int = 250,
        max_bytes: int = 1024 * 1024,
        max_pixels: int = 4096 * 4096,
    ) -> None:
        self.upload_dir = Path(upload_dir)
        self.url_prefix = url_prefix.rstrip("/")
        self.width = width
        self.max_bytes = max_bytes
        self.max_pixels = max_pixels
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def validate(self, content_type: str | None, data: bytes) -> None:
        if not content_type or not content_type.startswith("image/"):
            logger.warning("Rejected avatar upload with content type %r", content_type)
            raise AvatarError("invalid_avatar", "Avatar must be an image file")
        if len(data) > self.max_bytes:
            logger.warning("Rejected avatar upload of %d bytes", len(data))
            raise AvatarError(
                "avatar_too_large",
                f"Avatar must be at most {self.max_bytes // 1024} KB",
            )
        try:
            with Image.open(io.BytesIO(data)) as img:
                width, height = img.size
                img.verify()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as exc:
            logger.warning("Rejected undecodable avatar upload: %s", exc)
            raise AvatarError("invalid_avatar", "Avatar must be an image file") from exc
        if width * height > self.max_pixels or self.width * self._resized_height(width, height) > self.max_pixels:
            logger.warning("Rejected avatar upload of %dx%d pixels", width, height)
            raise AvatarError("avatar_too_large", "Avatar dimensions are too large")

    def _resized_height(self, width: int, height: int) -> int:
        return max(1, round(height * self.width / width))

    def save(self, data: bytes, content_type: str, owner_name: str) -> str:
        """Resize and write an already-validated image; return its URL path."""
        subtype = content_type.split("/", 1)[1].split(";", 1)[0].strip().lower()
        fmt = _FORMATS.get(subtype, "PNG")
        extension = subtype if subtype in _FORMATS else "png"
        filename = f"{_slug(owner_name)}-{int(time.time() * 1000)}-{secrets.token_hex(4)}.{extension}"

        with Image.open(io.BytesIO(data)) as img:
            height = self._resized_height(img.width, img.height)
            resized = img.resize((self.width, height), Image.Resampling.LANCZOS)
            if fmt == "JPEG" and resized.mode not in ("RGB", "L"):
                resized = resized.convert("RGB")
            resized.save(self.upload_dir / filename, fmt)

        logger.info("Stored avatar %s (%dx%d)", filename, self.width, height)
        return f"{self.url_prefix}/{filename}"

    def discard(self, url_path: str) -> None:
        """Delete a file previously returned by save(). Unknown paths are ignored."""
        if not url_path.startswith(self.url_prefix + "/"):
            return
        target = self.upload_dir / Path(url_path).name
        target.unlink(missing_ok=True)
