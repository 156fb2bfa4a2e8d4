"""Local blob store for chat attachments.

Uploads are written to ``upload_dir`` under a generated name that keeps
the original extension, and are served back by the API at
``/uploads/{name}``. The returned URL is what clients put in a message's
``image``, ``voice`` or ``file.url`` field.
"""

from __future__ import annotations

import logging
import mimetypes
import re
from pathlib import Path

from uuid_extensions import uuid7 as make_uuid7

from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")
_STORED_NAME = re.compile(r"^[0-9a-f-]{36}(\.[A-Za-z0-9]{1,16})?$")


def clean_filename(filename: str) -> str:
    """Reduce a client filename to a safe display name."""
    name = Path(filename.replace("\\", "/")).name
    name = _SAFE_NAME.sub("_", name).strip("._")
    return name[:128] or "upload"


class LocalBlobStore:
    """Stores uploaded bytes on the local filesystem."""

    def __init__(self, root: str | Path, max_bytes: int, public_url: str = ""):
        self.root = Path(root)
        self.max_bytes = max_bytes
        self.public_url = public_url.rstrip("/")

    def url_for(self, stored_name: str) -> str:
        return f"{self.public_url}/uploads/{stored_name}"

    def save(self, filename: str, content: bytes, content_type: str | None = None) -> dict:
        """Write an upload and describe it.

        Returns:
            {url, name, type, size} - ``name`` is the cleaned original name.

        Raises:
            ValidationError: Empty or oversized upload.
        """
        if not content:
            raise ValidationError("Upload is empty")
        if len(content) > self.max_bytes:
            raise ValidationError(f"Upload exceeds {self.max_bytes} bytes")

        display_name = clean_filename(filename)
        suffix = Path(display_name).suffix.lower()
        if not re.fullmatch(r"\.[a-z0-9]{1,16}", suffix):
            suffix = ""
        stored_name = f"{make_uuid7()}{suffix}"

        if not content_type or content_type == "application/octet-stream":
            content_type = mimetypes.guess_type(display_name)[0] or "application/octet-stream"

        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / stored_name).write_bytes(content)
        logger.info("Stored upload %s (%s, %d bytes)", stored_name, content_type, len(content))

        return {
            "url": self.url_for(stored_name),
            "name": display_name,
            "type": content_type,
            "size": len(content),
        }

    def path_for(self, stored_name: str) -> Path:
        """Resolve a stored name to its file.

        Raises:
            NotFoundError: Unknown or malformed name.
        """
        if not _STORED_NAME.match(stored_name):
            raise NotFoundError("File not found")
        path = self.root / stored_name
        if not path.is_file():
            raise NotFoundError("File not found")
        return path
