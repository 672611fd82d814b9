from __future__ import annotations

from decimal import Decimal
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from cloudvault.common.errors import CloudVaultError
from cloudvault.cost_model.models import StorageClass


class UnknownTierPolicy(CloudVaultError, ValueError):
    code = "retention.unknown_tier"
    status_code = 400
    resource_kind = "tier_policy"


class TierPolicy(BaseModel):
    name: str
    # -1 means unlimited.
    max_versions: int = Field(..., ge=-1)
    auto_delete_after_days: int = Field(..., ge=0)
    # Advisory only; cleanup does not look at it.
    allowed_storage_classes: Tuple[StorageClass, ...] = ()


class PlannedDeletion(BaseModel):
    file_id: str
    file_name: str
    version_id: str
    version_number: int
    file_size: int
    storage_class: StorageClass
    blob_key: str
    reason: str  # "age" | "count"


class CleanupItem(BaseModel):
    file_id: str
    file_name: str
    version_id: str
    version_number: int
    freed_bytes: int
    saved_cost: Decimal
    reason: str
    blob_released: bool = True


class CleanupFailure(BaseModel):
    file_id: str
    version_id: Optional[str] = None
    code: str
    message: str


class CleanupReport(BaseModel):
    tier: str
    cleaned_count: int = 0
    freed_bytes: int = 0
    saved_cost: Decimal = Decimal("0")
    items: List[CleanupItem] = Field(default_factory=list)
    failures: List[CleanupFailure] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
