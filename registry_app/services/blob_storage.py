"""
Blob store collaborator for uploaded snapshots and photos.

The registry only ever keeps the URLs this store hands back. ``LocalBlobStore``
keeps content under the Flask instance folder, keyed by content hash.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable
from uuid import uuid4

from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

DEFAULT_BLOB_SUBDIR = "blobs"
BLOB_EXTENSION_KEY = "registry_blob_store"


@dataclass(frozen=True)
class StoredBlob:
    url: str
    sha256: str
    size: int
    content_type: str | None


class BlobNotFound(LookupError):
    """Raised when a URL does not belong to, or no longer exists in, the store."""


class LocalBlobStore:
    """Filesystem-backed blob store."""

    def __init__(self, root: Path | str, *, base_url: str = "/blobs") -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _ensure_root(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def _key_for_url(self, url: str) -> str:
        prefix = f"{self.base_url}/"
        if not url.startswith(prefix):
            raise BlobNotFound(url)
        key = url[len(prefix) :]
        if not key or "/" in key or key != secure_filename(key):
            raise BlobNotFound(url)
        return key

    def store(self, data: bytes, *, filename: str | None = None, content_type: str | None = None) -> StoredBlob:
        digest = hashlib.sha256(data).hexdigest()
        original_name = secure_filename(filename or "")
        extension = Path(original_name).suffix.lower() if original_name else ""
        key = f"{digest[:16]}-{uuid4().hex[:8]}{extension}"
        target = self._ensure_root() / key
        target.write_bytes(data)
        logger.debug("Stored blob %s (%d bytes)", key, len(data))
        return StoredBlob(url=f"{self.base_url}/{key}", sha256=digest, size=len(data), content_type=content_type)

    def open(self, url: str) -> bytes:
        path = self.root / self._key_for_url(url)
        if not path.exists():
            raise BlobNotFound(url)
        return path.read_bytes()

    def delete(self, urls: Iterable[str]) -> int:
        """
        Remove stored blobs, logging but ignoring unknown URLs and filesystem errors.

        Returns the number of blobs removed.
        """

        removed = 0
        for url in urls:
            try:
                path = self.root / self._key_for_url(url)
            except BlobNotFound:
                logger.warning("Ignoring delete for foreign blob URL %s", url)
                continue
            try:
                if path.exists():
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.warning("Failed to remove blob %s: %s", path, exc)
        return removed


def resolve_blob_directory(app) -> Path:
    configured = app.config.get("REGISTRY_BLOB_DIR")
    if not configured:
        return Path(app.instance_path) / DEFAULT_BLOB_SUBDIR
    candidate = Path(configured)
    if candidate.is_absolute():
        return candidate
    return Path(app.instance_path) / candidate


def init_blob_store(app) -> LocalBlobStore:
    store = LocalBlobStore(
        resolve_blob_directory(app),
        base_url=app.config.get("REGISTRY_BLOB_BASE_URL", "/blobs"),
    )
    app.extensions[BLOB_EXTENSION_KEY] = store
    return store


def get_blob_store(app) -> LocalBlobStore:
    """Return the app's blob store, rebuilding it if the blob settings changed."""

    store = app.extensions.get(BLOB_EXTENSION_KEY)
    base_url = app.config.get("REGISTRY_BLOB_BASE_URL", "/blobs").rstrip("/")
    if store is None or store.root != resolve_blob_directory(app) or store.base_url != base_url:
        store = init_blob_store(app)
    return store
