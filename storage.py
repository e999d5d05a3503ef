"""
Local file storage for uploads.

Files land in ``UPLOAD_DIR/<category>/<uuid><ext>`` and are served back
under ``/uploads``. Each category has its own extension allow-list and size
ceiling, checked before the file is accepted.
"""

import logging
import os
import uuid
from pathlib import Path
from typing import NamedTuple, Optional

from fastapi import HTTPException, UploadFile

import settings

logger = logging.getLogger(__name__)

MB = 1024 * 1024
CHUNK_SIZE = 1024 * 1024

CATEGORY_RULES = {
    "notes": ({".pdf", ".doc", ".docx", ".ppt", ".pptx", ".txt"}, 20 * MB),
    "syllabus": ({".pdf", ".doc", ".docx"}, 20 * MB),
    "pyqs": ({".pdf", ".doc", ".docx"}, 20 * MB),
    "videos": ({".mp4", ".mov", ".avi", ".wmv"}, 200 * MB),
    "misc": ({".pdf", ".doc", ".docx", ".jpg", ".jpeg", ".png", ".gif"}, 5 * MB),
}


class StoredFile(NamedTuple):
    path: str
    url: str
    original_name: str
    size: int

    @property
    def file_type(self) -> str:
        return Path(self.original_name).suffix.lower().lstrip(".")

    def attachment(self) -> dict:
        return {
            "file_url": self.url,
            "file_path": self.path,
            "file_type": self.file_type,
            "file_name": self.original_name,
            "file_size": self.size,
        }


def upload_root() -> Path:
    return Path(settings.UPLOAD_DIR)


def public_url(relative_path: str) -> str:
    return f"{settings.PUBLIC_BASE_URL}/uploads/{relative_path}"


def has_file(upload: Optional[UploadFile]) -> bool:
    return upload is not None and bool(upload.filename)


def save_upload(upload: UploadFile, category: str) -> StoredFile:
    allowed, max_size = CATEGORY_RULES.get(category, CATEGORY_RULES["misc"])
    original_name = os.path.basename(upload.filename or "")
    ext = Path(original_name).suffix.lower()
    if ext not in allowed:
        raise HTTPException(
            status_code=400,
            detail=f"File type {ext or '(none)'} is not supported. Allowed types: {', '.join(sorted(allowed))}",
        )

    directory = upload_root() / category
    directory.mkdir(parents=True, exist_ok=True)
    relative_path = f"{category}/{uuid.uuid4().hex}{ext}"
    destination = upload_root() / relative_path

    size = 0
    with open(destination, "wb") as out:
        while True:
            chunk = upload.file.read(CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > max_size:
                out.close()
                destination.unlink(missing_ok=True)
                raise HTTPException(status_code=413, detail=f"Upload error: file exceeds {max_size // MB}MB limit")
            out.write(chunk)

    return StoredFile(path=relative_path, url=public_url(relative_path), original_name=original_name, size=size)


def delete_file(path: Optional[str]) -> bool:
    """Remove a stored file; a missing file is not an error."""
    if not path:
        return False
    target = upload_root() / path
    try:
        target.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning("Could not delete stored file %s: %s", path, exc)
        return False
