import asyncio
import logging
import mimetypes
import os
import time
from pathlib import Path, PurePosixPath
from typing import Optional
from pharmalink import config
from pharmalink.errors import ValidationError
from pharmalink.utils.logger import log_event, EventTypes

logger = logging.getLogger(__name__)

URL_PREFIX = "/uploads"


def _millis() -> int:
    return int(time.time() * 1000)


def extension_for(content_type: Optional[str], filename: Optional[str] = None) -> str:
    if not content_type or not content_type.startswith("image/"):
        raise ValidationError("Only image uploads are accepted")
    if filename and "." in filename:
        extension = filename.rsplit(".", 1)[1].lower()
        if extension.isalnum() and len(extension) <= 5:
            return extension
    guessed = mimetypes.guess_extension(content_type) or ".jpg"
    return guessed.lstrip(".")


def prescription_path(owner_id: str, index: int, extension: str) -> str:
    return f"prescriptions/{owner_id}/{index}_{_millis()}.{extension}"


def chat_image_path(chat_id: str, extension: str) -> str:
    return f"chat-images/{chat_id}/{_millis()}.{extension}"


class BlobStore:
    """Files on local disk under ``UPLOAD_DIR``, served back by the app at ``/uploads``."""

    def __init__(self, root: str = None, base_url: str = None, max_bytes: int = None):
        self.root = Path(root or config.UPLOAD_DIR)
        self.base_url = (base_url or config.PUBLIC_BASE_URL).rstrip("/")
        self.max_bytes = max_bytes or config.MAX_UPLOAD_BYTES

    def _resolve(self, path_hint: str) -> Path:
        relative = PurePosixPath(path_hint)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise ValidationError("Invalid upload path")
        return self.root.joinpath(*relative.parts)

    @staticmethod
    def _write(target: Path, data: bytes):
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        os.replace(tmp, target)

    async def upload(self, path_hint: str, data: bytes, user_id: Optional[str] = None) -> str:
        """Store ``data`` at ``path_hint`` and return its public URL."""
        if not data:
            raise ValidationError("Uploaded file is empty")
        if len(data) > self.max_bytes:
            raise ValidationError(f"File exceeds the {self.max_bytes // (1024 * 1024)}MB limit")

        target = self._resolve(path_hint)
        await asyncio.to_thread(self._write, target, data)
        await log_event(EventTypes.FILE_UPLOADED, {"path": path_hint, "size": len(data)}, user_id=user_id)
        return f"{self.base_url}{URL_PREFIX}/{PurePosixPath(path_hint)}"
