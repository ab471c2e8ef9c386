"""
Asset store for uploaded chat images.

Uploads land in the upload directory under a unique name and are referenced
by the relative URL `/uploads/<name>`. For the completion provider a relative
reference is turned back into inline `data:` content; fully qualified URLs
pass through untouched.
"""

import base64
import mimetypes
import random
import time
from pathlib import Path
from typing import Optional

import structlog
from fastapi import UploadFile

from sitechat.core.errors import ValidationError

logger = structlog.get_logger(__name__)

URL_PREFIX = "/uploads/"
CHUNK_SIZE = 64 * 1024
REMOTE_SCHEMES = ("http://", "https://", "data:")


class AssetStore:
    """Stores uploaded images and resolves image references."""

    def __init__(self, upload_dir: Path, max_bytes: int):
        self.upload_dir = Path(upload_dir)
        self.max_bytes = max_bytes

    def ensure_dir(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _unique_name(original_name: Optional[str]) -> str:
        suffix = Path(original_name or "").suffix.lower()
        return f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}{suffix}"

    async def save_upload(self, upload: Optional[UploadFile]) -> str:
        """
        Validate and store an uploaded image.

        Returns:
            The relative URL of the stored file

        Raises:
            ValidationError: No file, a non-image MIME type, or too large
        """
        if upload is None or not upload.filename:
            raise ValidationError("No file uploaded")
        if not (upload.content_type or "").startswith("image/"):
            raise ValidationError("Only image files are allowed")

        data = bytearray()
        while True:
            chunk = await upload.read(CHUNK_SIZE)
            if not chunk:
                break
            data.extend(chunk)
            if len(data) > self.max_bytes:
                logger.info("Upload rejected, file too large", filename=upload.filename)
                raise ValidationError(f"File too large (max {self.max_bytes // (1024 * 1024)} MB)")

        self.ensure_dir()
        name = self._unique_name(upload.filename)
        (self.upload_dir / name).write_bytes(bytes(data))

        logger.info("Image stored", name=name, size=len(data), content_type=upload.content_type)
        return URL_PREFIX + name

    def resolve_path(self, image_url: str) -> Optional[Path]:
        """Local file behind a relative reference, or None if it points outside the store."""
        relative = image_url.lstrip("/")
        prefix = URL_PREFIX.strip("/") + "/"
        if relative.startswith(prefix):
            relative = relative[len(prefix):]

        root = self.upload_dir.resolve()
        path = (root / relative).resolve()
        if root not in path.parents:
            return None
        return path

    def materialize(self, image_url: Optional[str], inline: bool = True) -> Optional[str]:
        """
        Turn a stored image reference into something the provider can read.

        Fully qualified URLs are returned unchanged. Relative references are
        embedded as base64 data URLs when `inline` is set. Anything that
        cannot be resolved yields None and the turn degrades to text.
        """
        if not image_url:
            return None
        if image_url.startswith(REMOTE_SCHEMES):
            return image_url
        if not inline:
            logger.warning("Relative image reference dropped, inline images disabled")
            return None

        path = self.resolve_path(image_url)
        if path is None or not path.is_file():
            logger.warning("Image reference could not be resolved", image_url=image_url)
            return None

        try:
            encoded = base64.b64encode(path.read_bytes()).decode("ascii")
        except OSError as e:
            logger.error("Image encoding error", image_url=image_url, error=str(e))
            return None

        mime_type = mimetypes.guess_type(path.name)[0]
        if not mime_type or not mime_type.startswith("image/"):
            extension = path.suffix.lstrip(".").lower()
            mime_type = "image/" + ("jpeg" if extension == "jpg" else extension or "png")

        return f"data:{mime_type};base64,{encoded}"
