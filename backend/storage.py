# backend/storage.py
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Optional

import config
from errors import UpstreamFailure, ValidationError

logger = logging.getLogger(__name__)

# Allowed document types: extension -> accepted MIME types
ALLOWED_DOCUMENT_TYPES = {
    ".pdf": {"application/pdf"},
    ".doc": {"application/msword"},
    ".docx": {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"},
    ".xls": {"application/vnd.ms-excel"},
    ".xlsx": {"application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"},
    ".jpg": {"image/jpeg", "image/jpg"},
    ".jpeg": {"image/jpeg", "image/jpg"},
    ".png": {"image/png"},
}


@dataclass
class StoredFile:
    filename: str
    original_name: str
    path: str
    mime_type: str
    size: int


@dataclass
class IncomingFile:
    """An uploaded file already read into memory"""

    filename: str
    content_type: Optional[str]
    data: bytes


class FileStorage:
    """Local-disk document store with a type whitelist and size cap"""

    def __init__(self, root: Optional[str] = None, max_bytes: Optional[int] = None):
        self.root = root or config.UPLOAD_DIR
        self.max_bytes = max_bytes or config.MAX_UPLOAD_BYTES

    def validate(self, incoming: IncomingFile):
        original = os.path.basename(incoming.filename or "")
        if not original:
            raise ValidationError("Uploaded file has no name")

        ext = os.path.splitext(original)[1].lower()
        allowed_mimes = ALLOWED_DOCUMENT_TYPES.get(ext)
        if not allowed_mimes:
            raise ValidationError(f"File type not allowed: {original}")

        mime = (incoming.content_type or "").split(";")[0].strip().lower()
        if mime and mime != "application/octet-stream" and mime not in allowed_mimes:
            raise ValidationError(f"Content type {mime} does not match {original}")

        if len(incoming.data) > self.max_bytes:
            raise ValidationError(f"File too large: {original} exceeds {self.max_bytes // (1024 * 1024)}MB")
        if not incoming.data:
            raise ValidationError(f"File is empty: {original}")

    def save(self, incoming: IncomingFile, folder: str = "documents") -> StoredFile:
        self.validate(incoming)

        original = os.path.basename(incoming.filename)
        ext = os.path.splitext(original)[1].lower()
        stored_name = f"{uuid.uuid4().hex}{ext}"
        directory = os.path.join(self.root, folder)
        path = os.path.join(directory, stored_name)

        try:
            os.makedirs(directory, exist_ok=True)
            with open(path, "wb") as fh:
                fh.write(incoming.data)
        except OSError as e:
            logger.error(f"Error storing {original} at {path}: {e}")
            raise UpstreamFailure("File storage unavailable")

        logger.info(f"Stored {original} as {path} ({len(incoming.data)} bytes)")
        mime = (incoming.content_type or "").split(";")[0].strip().lower()
        if not mime or mime == "application/octet-stream":
            mime = sorted(ALLOWED_DOCUMENT_TYPES[ext])[0]
        return StoredFile(
            filename=stored_name,
            original_name=original,
            path=path.replace("\\", "/"),
            mime_type=mime,
            size=len(incoming.data),
        )

    def save_all(self, files, folder: str = "documents"):
        if len(files) > config.MAX_FILES_PER_REQUEST:
            raise ValidationError(f"At most {config.MAX_FILES_PER_REQUEST} files per request")
        # Validate everything before writing anything
        for incoming in files:
            self.validate(incoming)
        return [self.save(incoming, folder) for incoming in files]

    def discard(self, stored: StoredFile):
        try:
            os.remove(stored.path)
        except OSError as e:
            logger.warning(f"Could not remove orphaned upload {stored.path}: {e}")


def get_file_storage() -> FileStorage:
    return FileStorage()
