"""Object storage for complaint evidence plus upload validation helpers."""
from __future__ import annotations

import mimetypes
import os
from dataclasses import dataclass
from typing import Protocol

from flask import current_app, url_for
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from utils.security import compute_hash

ALLOWED_MIME_PREFIXES: tuple[str, ...] = ("image/", "video/", "audio/")
ALLOWED_MIME_TYPES: frozenset[str] = frozenset({"application/pdf"})
DEFAULT_MAX_EVIDENCE_BYTES = 20 * 1024 * 1024


class StorageError(Exception):
    """Raised when the object store refuses or fails an upload."""


@dataclass
class EvidenceUpload:
    """One evidence item as received from the caller, before it is stored."""

    file_name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def content_hash(self) -> str:
        return compute_hash(self.data)


class ObjectStorage(Protocol):
    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        """Store ``data`` at ``bucket/path`` and return its public URL."""


def _guess_type(file_name: str, declared: str | None) -> str:
    declared = (declared or "").split(";")[0].strip().lower()
    if declared and declared != "application/octet-stream":
        return declared
    guessed, _ = mimetypes.guess_type(file_name)
    return (guessed or "application/octet-stream").lower()


def is_allowed_type(content_type: str) -> bool:
    return content_type in ALLOWED_MIME_TYPES or content_type.startswith(ALLOWED_MIME_PREFIXES)


def read_upload(file: FileStorage, max_bytes: int = DEFAULT_MAX_EVIDENCE_BYTES) -> EvidenceUpload:
    """Validate an incoming multipart file and load it into memory."""
    if not file or not file.filename:
        raise ValueError("No file provided")
    file_name = secure_filename(file.filename)
    if not file_name:
        raise ValueError("Unsupported file name")
    content_type = _guess_type(file_name, file.mimetype or file.content_type)
    if not is_allowed_type(content_type):
        raise ValueError(f"File type not allowed: {content_type}")

    data = file.read()
    if not data:
        raise ValueError(f"Empty file: {file_name}")
    if len(data) > max_bytes:
        raise ValueError(f"File exceeds size limits: {file_name}")
    return EvidenceUpload(file_name=file_name, content_type=content_type, data=data)


def evidence_path(owner_reference: str, complaint_id: str, file_name: str) -> str:
    return f"{owner_reference}/{complaint_id}/{secure_filename(file_name)}"


class LocalObjectStorage:
    """Filesystem-backed bucket store; one directory per bucket, never overwrites."""

    def __init__(self, root: str, public_base_url: str | None = None) -> None:
        self.root = os.path.abspath(root)
        self.public_base_url = (public_base_url or "").rstrip("/")

    def _resolve(self, bucket: str, path: str) -> str:
        bucket_root = os.path.join(self.root, secure_filename(bucket))
        target = os.path.abspath(os.path.join(bucket_root, path))
        if not target.startswith(bucket_root + os.sep):
            raise StorageError("Invalid object path")
        return target

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        target = self._resolve(bucket, path)
        if os.path.exists(target):
            raise StorageError(f"The resource already exists: {path}")
        os.makedirs(os.path.dirname(target), exist_ok=True)
        try:
            with open(target, "xb") as handle:
                handle.write(data)
        except OSError as exc:
            raise StorageError(f"Upload failed for {path}") from exc
        return self.public_url(bucket, path)

    def public_url(self, bucket: str, path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{bucket}/{path}"
        return url_for("main.evidence_object", bucket=bucket, object_path=path, _external=True)

    def open_path(self, bucket: str, path: str) -> str:
        target = self._resolve(bucket, path)
        if not os.path.isfile(target):
            raise FileNotFoundError(path)
        return target


def get_storage() -> ObjectStorage:
    """Return the storage bound to the current app, creating the default on first use."""
    storage = current_app.extensions.get("evidence_storage")
    if storage is None:
        storage = LocalObjectStorage(
            current_app.config["EVIDENCE_STORAGE_ROOT"],
            current_app.config.get("EVIDENCE_PUBLIC_BASE_URL"),
        )
        current_app.extensions["evidence_storage"] = storage
    return storage
