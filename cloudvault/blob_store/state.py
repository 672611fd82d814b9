from __future__ import annotations

from typing import Optional

from cloudvault.blob_store.repository import BlobStore, InMemoryBlobStore, S3BlobStore
from cloudvault.config import runtime_config


def _default_blob_store() -> BlobStore:
    backend = runtime_config.get_blob_store_backend()
    if backend == "s3":
        return S3BlobStore()
    if backend != "memory":
        raise RuntimeError(f"Unsupported BLOB_STORE_BACKEND: {backend}")
    return InMemoryBlobStore()


_blob_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    global _blob_store
    if _blob_store is None:
        _blob_store = _default_blob_store()
    return _blob_store


def set_blob_store(store: Optional[BlobStore]) -> None:
    global _blob_store
    _blob_store = store
