from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Dict, List, Protocol

from pydantic import BaseModel, Field

from cloudvault.common.errors import CloudVaultError


class StorageClass(str, Enum):
    """Storage tiers, declared from most expensive/fastest to cheapest/slowest."""

    STANDARD = "STANDARD"
    STANDARD_IA = "STANDARD_IA"
    INTELLIGENT_TIERING = "INTELLIGENT_TIERING"
    ONEZONE_IA = "ONEZONE_IA"
    GLACIER_IR = "GLACIER_IR"
    GLACIER = "GLACIER"
    DEEP_ARCHIVE = "DEEP_ARCHIVE"

    @classmethod
    def ordered(cls) -> List["StorageClass"]:
        return list(cls)


class InvalidStorageClass(CloudVaultError, ValueError):
    code = "cost_model.invalid_storage_class"
    status_code = 400
    resource_kind = "storage_class"


class PricedItem(Protocol):
    """Anything that occupies bytes in a storage class (a version, a file)."""

    storage_class: StorageClass
    file_size: int


class StorageClassRecommendation(BaseModel):
    storage_class: StorageClass
    reason: str
    savings_percent: int = 0
    explanation: str = ""


class StorageClassInfo(BaseModel):
    storage_class: StorageClass
    base_cost: Decimal
    margin_percent: int
    price_per_gb: Decimal
    retrieval_time: str
    minimum_duration_days: int = 0
    savings_vs_standard_percent: int = 0


class CostBreakdownEntry(BaseModel):
    count: int = 0
    total_size: int = 0
    total_cost: Decimal = Decimal("0")


class CostRecommendation(BaseModel):
    file_id: str
    file_name: str
    current_class: StorageClass
    recommended_class: StorageClass
    monthly_savings: Decimal
    reason: str


class CostAnalysis(BaseModel):
    total_files: int = 0
    total_size: int = 0
    total_monthly_cost: Decimal = Decimal("0")
    breakdown: Dict[StorageClass, CostBreakdownEntry] = Field(default_factory=dict)
    recommendations: List[CostRecommendation] = Field(default_factory=list)
    potential_monthly_savings: Decimal = Decimal("0")
