from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from cloudvault.cost_model.models import StorageClass
from cloudvault.cost_model.service import parse_storage_class


class OptimizeOptions(BaseModel):
    days_threshold: int = Field(30, ge=0)
    target_class: StorageClass = StorageClass.STANDARD_IA
    skip_active_version: bool = True
    # Ask the blob store to re-tier objects too, not just relabel them.
    transition_blobs: bool = False

    @field_validator("target_class", mode="before")
    @classmethod
    def parse_target(cls, value):
        return parse_storage_class(value)


class OptimizedVersion(BaseModel):
    file_id: str
    version_id: str
    version_number: int
    old_storage_class: StorageClass
    new_storage_class: StorageClass
    file_size: int
    blob_key: str
    savings: Decimal


class OptimizeFailure(BaseModel):
    file_id: str
    version_id: Optional[str] = None
    code: str
    message: str


class OptimizeReport(BaseModel):
    optimized_count: int = 0
    items: List[OptimizedVersion] = Field(default_factory=list)
    total_savings: Decimal = Decimal("0")
    failures: List[OptimizeFailure] = Field(default_factory=list)
    files_scanned: int = 0

    def extend(self, other: "OptimizeReport") -> None:
        self.items.extend(other.items)
        self.failures.extend(other.failures)
        self.optimized_count = len(self.items)
        self.total_savings = sum((i.savings for i in self.items), Decimal("0"))
