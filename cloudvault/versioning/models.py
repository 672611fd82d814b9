from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from cloudvault.cost_model.models import CostBreakdownEntry, StorageClass
from cloudvault.version_store.models import FileVersion

MIGRATION_COMMENT = "Initial version (migrated from legacy)"


class VersionWithCost(FileVersion):
    monthly_cost: Decimal = Decimal("0")


class VersionHistory(BaseModel):
    file_id: str
    original_name: str
    current_version_number: int
    total_versions: int
    # Latest (highest version number) first.
    versions: List[VersionWithCost] = Field(default_factory=list)
    total_monthly_cost: Decimal = Decimal("0")
    total_size: int = 0
    cost_breakdown: Dict[StorageClass, CostBreakdownEntry] = Field(default_factory=dict)


class VersionDetail(FileVersion):
    file_id: str
    file_name: str


class VersionStatistics(BaseModel):
    total_files: int = 0
    total_versions: int = 0
    average_versions_per_file: float = 0.0
    total_version_size: int = 0
    total_version_cost: Decimal = Decimal("0")
    storage_class_breakdown: Dict[StorageClass, CostBreakdownEntry] = Field(default_factory=dict)


class VersionMetadataUpdate(BaseModel):
    comment: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class DeletedVersion(BaseModel):
    deleted_version: FileVersion
    remaining_versions: int


class DownloadLink(BaseModel):
    download_url: str
    file_name: str
    file_size: int
    version_number: int
