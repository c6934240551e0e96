# chat_relay/services/uploads.py
import base64
import hashlib
import logging
from pathlib import Path
from typing import Optional

from ..core.config import settings

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
}
CONTENT_TYPES = {ext: mime for mime, ext in ALLOWED_IMAGE_TYPES.items()}
CONTENT_TYPES[".jpeg"] = "image/jpeg"

PUBLIC_PREFIX = "/api/uploads"


class UploadRejected(Exception):
    pass


def upload_dir() -> Path:
    path = Path(settings.UPLOAD_DIR)
    path.mkdir(parents=True, exist_ok=True)
    return path


def save_image(data: bytes, content_type: Optional[str]) -> str:
    """
    Stores an uploaded image under its content hash and returns the public
    path, e.g. ``/api/uploads/<sha256>.png``.
    """
    mime = (content_type or "").split(";")[0].strip().lower()
    if mime not in ALLOWED_IMAGE_TYPES:
        raise UploadRejected(f"Unsupported image type: {content_type or 'unknown'}")
    if not data:
        raise UploadRejected("Empty image")
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise UploadRejected(f"Image larger than {settings.MAX_UPLOAD_BYTES} bytes")

    filename = f"{hashlib.sha256(data).hexdigest()}{ALLOWED_IMAGE_TYPES[mime]}"
    filepath = upload_dir() / filename

    # identical content is already stored
    if filepath.exists():
        logger.debug(f"Upload cache hit: {filename}")
    else:
        filepath.write_bytes(data)
        logger.info(f"Stored upload {filename} ({len(data)} bytes)")

    return f"{PUBLIC_PREFIX}/{filename}"


def to_data_url(data: bytes, content_type: str) -> str:
    mime = content_type.split(";")[0].strip().lower()
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def resolve_upload(filename: str) -> Path:
    """Path of a stored upload; rejects traversal and unknown extensions."""
    safe_filename = Path(filename).name
    if safe_filename != filename or ".." in safe_filename or safe_filename.startswith("."):
        raise UploadRejected("Invalid file name")
    if Path(safe_filename).suffix.lower() not in CONTENT_TYPES:
        raise UploadRejected("Unsupported file type")

    path = upload_dir() / safe_filename
    if not path.is_file():
        raise FileNotFoundError(safe_filename)
    return path
