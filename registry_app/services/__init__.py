"""External collaborator services."""

from .blob_storage import BlobNotFound, LocalBlobStore, StoredBlob, get_blob_store, init_blob_store

__all__ = ["BlobNotFound", "LocalBlobStore", "StoredBlob", "get_blob_store", "init_blob_store"]
