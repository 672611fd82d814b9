"""Domain errors raised by the version store and the lifecycle built on it."""
from __future__ import annotations

from cloudvault.common.errors import CloudVaultError
from cloudvault.cost_model.models import InvalidStorageClass


class VersionStoreError(CloudVaultError):
    code = "version_store.error"


class FileNotFound(VersionStoreError):
    code = "version_store.file_not_found"
    status_code = 404
    resource_kind = "file"


class FileAlreadyExists(VersionStoreError):
    code = "version_store.file_already_exists"
    status_code = 409
    resource_kind = "file"


class VersionNotFound(VersionStoreError):
    code = "versioning.version_not_found"
    status_code = 404
    resource_kind = "version"


class CannotDeleteOnlyVersion(VersionStoreError):
    code = "versioning.cannot_delete_only_version"
    status_code = 409
    resource_kind = "version"


class CannotDeleteActiveVersion(VersionStoreError):
    code = "versioning.cannot_delete_active_version"
    status_code = 409
    resource_kind = "version"


class ConcurrentModificationConflict(VersionStoreError):
    code = "version_store.concurrent_modification"
    status_code = 409
    resource_kind = "file"


class StoreTimeout(VersionStoreError):
    code = "version_store.timeout"
    status_code = 503
    resource_kind = "file"


class InvariantViolation(VersionStoreError):
    code = "version_store.invariant_violation"
    status_code = 500
    resource_kind = "file"


class UnreadableRecord(VersionStoreError):
    code = "version_store.unreadable_record"
    status_code = 500
    resource_kind = "file"


__all__ = [
    "VersionStoreError",
    "FileNotFound",
    "FileAlreadyExists",
    "VersionNotFound",
    "CannotDeleteOnlyVersion",
    "CannotDeleteActiveVersion",
    "ConcurrentModificationConflict",
    "StoreTimeout",
    "InvariantViolation",
    "UnreadableRecord",
    "InvalidStorageClass",
]
