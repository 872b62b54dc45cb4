from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from bookshelf.logging import get_logger
from bookshelf.service.errors import ValidationError

logger = get_logger(__name__)

PUBLIC_PREFIX = "/uploads/"
THUMBNAIL_SUBDIR = "thumbnails"

ALLOWED_IMAGE_TYPES = {
    "image/jpeg": (".jpg", ".jpeg"),
    "image/jpg": (".jpg", ".jpeg"),
    "image/png": (".png",),
    "image/gif": (".gif",),
    "image/webp": (".webp",),
}

_IMAGE_SIGNATURES = {
    ".jpg": (b"\xff\xd8\xff",),
    ".jpeg": (b"\xff\xd8\xff",),
    ".png": (b"\x89PNG\r\n\x1a\n",),
    ".gif": (b"GIF87a", b"GIF89a"),
}


def _matches_signature(extension: str, content: bytes) -> bool:
    if extension == ".webp":
        return content[:4] == b"RIFF" and content[8:12] == b"WEBP"
    return content.startswith(_IMAGE_SIGNATURES[extension])


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


@dataclass
class ThumbnailUpload:
    filename: str
    content_type: Optional[str]
    content: bytes


class ThumbnailStorage:
    """Stores book thumbnails under ``<upload_dir>/thumbnails`` with random names."""

    def __init__(self, upload_dir: str | Path, *, max_bytes: int) -> None:
        self.upload_dir = Path(upload_dir)
        self.max_bytes = max_bytes

    @property
    def thumbnail_dir(self) -> Path:
        return self.upload_dir / THUMBNAIL_SUBDIR

    def validate(self, upload: ThumbnailUpload) -> str:
        """Check type, extension, size and leading magic bytes; returns the normalized extension."""
        content_type = (upload.content_type or "").lower()
        extensions = ALLOWED_IMAGE_TYPES.get(content_type)
        if not extensions:
            raise ValidationError(
                "only image files are allowed (jpeg, png, gif, webp)",
                detail={"field": "thumbnail"},
            )
        extension = Path(upload.filename or "").suffix.lower()
        if extension not in extensions:
            raise ValidationError(
                "file extension does not match image type",
                detail={"field": "thumbnail"},
            )
        if not upload.content:
            raise ValidationError("uploaded file is empty", detail={"field": "thumbnail"})
        if len(upload.content) > self.max_bytes:
            raise ValidationError(
                "file too large",
                detail={"field": "thumbnail", "max_bytes": self.max_bytes},
            )
        if not _matches_signature(extension, upload.content):
            raise ValidationError(
                "file content is not a valid image", detail={"field": "thumbnail"}
            )
        return extension

    def save(self, upload: ThumbnailUpload) -> str:
        """Write the file and return its public URL path."""
        extension = self.validate(upload)
        name = f"{int(time.time() * 1000)}-{secrets.token_hex(8)}{extension}"
        dest = safe_join(self.thumbnail_dir, name)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(upload.content)
        logger.info("thumbnail_saved", path=name, size=len(upload.content))
        return f"{PUBLIC_PREFIX}{THUMBNAIL_SUBDIR}/{name}"

    def path_for(self, url: str) -> Path:
        idx = url.find(PUBLIC_PREFIX)
        relative = url[idx + len(PUBLIC_PREFIX):] if idx >= 0 else url
        return safe_join(self.upload_dir, relative)

    def delete(self, url: Optional[str]) -> bool:
        """Best-effort removal; failures are logged, never raised."""
        if not url:
            return False
        try:
            path = self.path_for(url)
            if not path.is_file():
                return False
            path.unlink()
            logger.info("thumbnail_deleted", url=url)
            return True
        except (OSError, PathTraversalError) as exc:
            logger.warning("thumbnail_delete_failed", url=url, error=str(exc))
            return False
