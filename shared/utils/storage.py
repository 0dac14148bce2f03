"""
shared/utils/storage.py
Local-disk file storage for avatars, provider documents, service images
and category icons. Files get random names inside a per-kind folder and
are served by the app under /uploads.
"""

import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aiofiles
from fastapi import UploadFile

from config.settings import settings
from shared.utils.errors import ValidationError

logger = logging.getLogger(__name__)

URL_PREFIX = "/uploads"

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}
DOCUMENT_EXTENSIONS = {".jpg", ".jpeg", ".png", ".pdf"}
ICON_EXTENSIONS = IMAGE_EXTENSIONS | {".svg"}


@dataclass(frozen=True)
class UploadKind:
    folder: str
    extensions: frozenset
    max_bytes: int


AVATAR = UploadKind("avatars", frozenset(IMAGE_EXTENSIONS), settings.UPLOAD_MAX_IMAGE_MB * 1024 * 1024)
DOCUMENT = UploadKind(
    "documents", frozenset(DOCUMENT_EXTENSIONS), settings.UPLOAD_MAX_DOCUMENT_MB * 1024 * 1024
)
SERVICE_IMAGE = UploadKind(
    "services", frozenset(IMAGE_EXTENSIONS), settings.UPLOAD_MAX_IMAGE_MB * 1024 * 1024
)
CATEGORY_ICON = UploadKind(
    "categories", frozenset(ICON_EXTENSIONS), settings.UPLOAD_MAX_IMAGE_MB * 1024 * 1024
)


class LocalFileStorage:
    """store(file, kind) -> public URL; delete(url)."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.UPLOAD_DIR)

    def _extension(self, filename: Optional[str], kind: UploadKind) -> str:
        ext = Path(filename or "").suffix.lower()
        if ext not in kind.extensions:
            raise ValidationError(
                f"File type '{ext or 'unknown'}' not allowed. "
                f"Allowed: {', '.join(sorted(kind.extensions))}"
            )
        return ext

    async def store(self, file: UploadFile, kind: UploadKind) -> str:
        ext = self._extension(file.filename, kind)
        content = await file.read()
        if not content:
            raise ValidationError("Uploaded file is empty")
        if len(content) > kind.max_bytes:
            raise ValidationError(
                f"File too large. Maximum size is {kind.max_bytes // (1024 * 1024)}MB"
            )

        folder = self.root / kind.folder
        folder.mkdir(parents=True, exist_ok=True)
        name = f"{uuid.uuid4().hex}{ext}"

        async with aiofiles.open(folder / name, "wb") as out:
            await out.write(content)

        logger.info("Stored upload %s/%s (%d bytes)", kind.folder, name, len(content))
        return f"{URL_PREFIX}/{kind.folder}/{name}"

    def path_for(self, url: str) -> Optional[Path]:
        if not url or not url.startswith(f"{URL_PREFIX}/"):
            return None
        relative = url[len(URL_PREFIX) + 1:]
        path = (self.root / relative).resolve()
        if self.root.resolve() not in path.parents:
            return None
        return path

    async def delete(self, url: Optional[str]) -> bool:
        """Remove a stored file. Missing files are not an error."""
        path = self.path_for(url or "")
        if path is None:
            return False
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Could not delete upload %s: %s", url, e)
            return False


def get_storage() -> LocalFileStorage:
    """FastAPI dependency for the upload store."""
    return LocalFileStorage()
