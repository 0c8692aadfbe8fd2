"""
Server-side storage for files uploaded with submissions.
Files land under ``UPLOAD_DIR`` grouped by the submission's client id.
"""
import hashlib
import os
import re
from datetime import datetime, timezone
from typing import Optional

from ..core.config import settings

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_file_name(name: str) -> str:
    """Strip directory parts and unusual characters from a client-supplied name."""
    base = os.path.basename(name.replace("\\", "/")) or "file"
    return _UNSAFE_CHARS.sub("_", base)


class FileStorageService:
    """Store uploaded attachments on the local filesystem."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir or settings.UPLOAD_DIR or os.path.join(
            os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))),
            "uploads",
        )

    def store(self, data: bytes, submission_local_id: str, question_name: str, file_name: str) -> dict:
        """Persist a file and return ``{"path": ..., "sha256": ...}``.

        ``path`` is relative to the storage root.
        """
        digest = hashlib.sha256(data).hexdigest()
        folder = safe_file_name(submission_local_id)
        target_dir = os.path.join(self.base_dir, folder)
        os.makedirs(target_dir, exist_ok=True)

        ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
        stored_name = f"{safe_file_name(question_name)}_{ts}_{safe_file_name(file_name)}"
        with open(os.path.join(target_dir, stored_name), "wb") as fh:
            fh.write(data)
        return {"path": f"{folder}/{stored_name}", "sha256": digest}

    def absolute_path(self, path: str) -> str:
        return os.path.join(self.base_dir, *path.split("/"))


file_storage = FileStorageService()
