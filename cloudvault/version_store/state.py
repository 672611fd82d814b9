from __future__ import annotations

from typing import Optional

from cloudvault.config import runtime_config
from cloudvault.version_store.repository import FilesystemVersionStore, InMemoryVersionStore, VersionStore


def _default_store() -> VersionStore:
    backend = runtime_config.get_version_store_backend()
    if backend == "filesystem":
        return FilesystemVersionStore(runtime_config.get_version_store_dir())
    if backend != "memory":
        raise RuntimeError(f"Unsupported VERSION_STORE_BACKEND: {backend}")
    return InMemoryVersionStore()


_version_store: Optional[VersionStore] = None


def get_version_store() -> VersionStore:
    global _version_store
    if _version_store is None:
        _version_store = _default_store()
    return _version_store


def set_version_store(store: Optional[VersionStore]) -> None:
    """Swap the process-wide store; ``None`` resets to the env-selected default."""
    global _version_store
    _version_store = store
