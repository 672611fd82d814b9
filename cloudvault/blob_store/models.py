from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel

from cloudvault.common.errors import CloudVaultError
from cloudvault.common.identity import validate_tenant_id
from cloudvault.cost_model.models import StorageClass

_UNSAFE_NAME_CHARS = re.compile(r"[\\/\x00-\x1f]")


class BlobStoreError(CloudVaultError):
    code = "blob_store.error"
    status_code = 502
    resource_kind = "blob"


class BlobStoreTimeout(BlobStoreError):
    code = "blob_store.timeout"
    status_code = 503


class BlobLocator(BaseModel):
    key: str
    uri: str
    storage_class: StorageClass
    size: int = 0
    etag: Optional[str] = None


def build_blob_key(tenant_id: str, file_uuid: str, file_name: str) -> str:
    """``tenants/{tenant}/files/{file_uuid}/{file_name}`` with the name flattened."""
    validate_tenant_id(tenant_id)
    safe_name = _UNSAFE_NAME_CHARS.sub("_", file_name).strip() or "blob"
    if safe_name in {".", ".."}:
        safe_name = "blob"
    return f"tenants/{tenant_id}/files/{file_uuid}/{safe_name}"
