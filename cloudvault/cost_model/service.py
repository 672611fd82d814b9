"""Storage-class pricing, recommendation and cost analysis helpers.

Everything here is a pure function of its inputs plus the price tables below;
there is no state, so callers may use it from any thread.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from cloudvault.config import runtime_config
from cloudvault.config.runtime_config import StorageSettings
from cloudvault.cost_model.models import (
    CostAnalysis,
    CostBreakdownEntry,
    CostRecommendation,
    InvalidStorageClass,
    PricedItem,
    StorageClass,
    StorageClassInfo,
    StorageClassRecommendation,
)

BYTES_PER_GB = Decimal(1024 ** 3)
BYTES_PER_MB = 1024 * 1024
MIN_RECOMMENDATION_SAVINGS = Decimal("0.01")

# USD per GB/month before margin.
BASE_COSTS: Dict[StorageClass, Decimal] = {
    StorageClass.STANDARD: Decimal("0.023"),
    StorageClass.STANDARD_IA: Decimal("0.0125"),
    StorageClass.INTELLIGENT_TIERING: Decimal("0.0125"),
    StorageClass.ONEZONE_IA: Decimal("0.01"),
    StorageClass.GLACIER_IR: Decimal("0.004"),
    StorageClass.GLACIER: Decimal("0.0036"),
    StorageClass.DEEP_ARCHIVE: Decimal("0.00099"),
}

# Percent markup applied on top of the base cost.
MARGINS: Dict[StorageClass, int] = {
    StorageClass.STANDARD: 25,
    StorageClass.STANDARD_IA: 35,
    StorageClass.INTELLIGENT_TIERING: 30,
    StorageClass.ONEZONE_IA: 40,
    StorageClass.GLACIER_IR: 45,
    StorageClass.GLACIER: 50,
    StorageClass.DEEP_ARCHIVE: 60,
}

_RETRIEVAL: Dict[StorageClass, tuple[str, int]] = {
    StorageClass.STANDARD: ("instant", 0),
    StorageClass.STANDARD_IA: ("instant", 30),
    StorageClass.INTELLIGENT_TIERING: ("instant", 0),
    StorageClass.ONEZONE_IA: ("instant", 30),
    StorageClass.GLACIER_IR: ("instant", 90),
    StorageClass.GLACIER: ("1-5 minutes", 90),
    StorageClass.DEEP_ARCHIVE: ("12 hours", 180),
}


def parse_storage_class(value: Union[str, StorageClass, None]) -> StorageClass:
    if isinstance(value, StorageClass):
        return value
    if not value:
        raise InvalidStorageClass("storage class is required")
    try:
        return StorageClass(str(value).strip().upper())
    except ValueError:
        raise InvalidStorageClass(f"unknown storage class: {value}", storage_class=value) from None


def unit_cost(storage_class: Union[str, StorageClass], with_margin: bool = True) -> Decimal:
    """USD per GB/month for a class, optionally including the margin."""
    sc = parse_storage_class(storage_class)
    base = BASE_COSTS[sc]
    if not with_margin:
        return base
    return base * (1 + Decimal(MARGINS[sc]) / 100)


def monthly_cost(storage_class: Union[str, StorageClass], size_bytes: int) -> Decimal:
    if size_bytes < 0:
        raise ValueError("size_bytes must be >= 0")
    return Decimal(size_bytes) / BYTES_PER_GB * unit_cost(storage_class)


def _extension(file_name: str) -> str:
    name = (file_name or "").lower()
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1]


def recommend_class(
    mime_type: Optional[str],
    size_bytes: int,
    file_name: str = "",
    settings: Optional[StorageSettings] = None,
) -> StorageClassRecommendation:
    """Ordered heuristics; the first matching rule wins.

    Size is checked before any extension rule, so a large archive still lands
    in STANDARD_IA rather than GLACIER.
    """
    cfg = settings or runtime_config.storage_settings()
    mime = (mime_type or "").lower()
    name = (file_name or "").lower()
    ext = _extension(name)
    size_mb = size_bytes / BYTES_PER_MB

    if size_mb > cfg.large_file_threshold_mb:
        return StorageClassRecommendation(
            storage_class=StorageClass.STANDARD_IA,
            reason=f"Large file ({round(size_mb)}MB) - infrequent-access storage",
            savings_percent=46,
            explanation="Large files stay instantly accessible while paying much less per GB.",
        )
    if any(ext == candidate or candidate in mime for candidate in cfg.archive_extensions):
        return StorageClassRecommendation(
            storage_class=StorageClass.GLACIER,
            reason="Archive file - long-term archive storage",
            savings_percent=84,
            explanation="Compressed archives are rarely read back and suit the cold archive tier.",
        )
    if any(ext == candidate or candidate in name for candidate in cfg.backup_extensions):
        return StorageClassRecommendation(
            storage_class=StorageClass.GLACIER_IR,
            reason="Backup file - instant-retrieval archive storage",
            savings_percent=83,
            explanation="Backups need to be restorable quickly but are seldom read.",
        )
    if (
        ext in cfg.frequent_extensions
        or mime.startswith("image/")
        or mime.startswith("video/")
        or mime == "application/pdf"
    ):
        return StorageClassRecommendation(
            storage_class=StorageClass.STANDARD,
            reason="Active file - standard storage",
            savings_percent=0,
            explanation="Media and documents used regularly are best served from the hot tier.",
        )
    default_class = parse_storage_class(cfg.default_storage_class)
    return StorageClassRecommendation(
        storage_class=default_class,
        reason=f"General purpose file - default storage ({default_class.value})",
        savings_percent=0,
        explanation="Files matching no other rule go to the configured default class.",
    )


def storage_class_catalogue() -> List[StorageClassInfo]:
    standard_base = BASE_COSTS[StorageClass.STANDARD]
    items: List[StorageClassInfo] = []
    for sc in StorageClass:
        base = BASE_COSTS[sc]
        retrieval, minimum_days = _RETRIEVAL[sc]
        savings = int(((standard_base - base) / standard_base * 100).to_integral_value())
        items.append(
            StorageClassInfo(
                storage_class=sc,
                base_cost=base,
                margin_percent=MARGINS[sc],
                price_per_gb=unit_cost(sc),
                retrieval_time=retrieval,
                minimum_duration_days=minimum_days,
                savings_vs_standard_percent=savings,
            )
        )
    return items


def cost_breakdown(items: Iterable[PricedItem]) -> Dict[StorageClass, CostBreakdownEntry]:
    breakdown: Dict[StorageClass, CostBreakdownEntry] = {}
    for item in items:
        entry = breakdown.setdefault(item.storage_class, CostBreakdownEntry())
        entry.count += 1
        entry.total_size += item.file_size
        entry.total_cost += monthly_cost(item.storage_class, item.file_size)
    return breakdown


def analyze_costs(files: Iterable, min_savings: Decimal = MIN_RECOMMENDATION_SAVINGS) -> CostAnalysis:
    """Aggregate current spend and suggest cheaper classes where it pays off.

    ``files`` are stored file aggregates (anything exposing ``id``,
    ``original_name``, ``mime_type``, ``file_size`` and ``storage_class``).
    """
    files = list(files)
    analysis = CostAnalysis(
        total_files=len(files),
        total_size=sum(f.file_size for f in files),
        breakdown=cost_breakdown(files),
    )
    analysis.total_monthly_cost = sum((e.total_cost for e in analysis.breakdown.values()), Decimal("0"))
    settings = runtime_config.storage_settings()
    for f in files:
        rec = recommend_class(f.mime_type, f.file_size, f.original_name, settings=settings)
        if rec.storage_class == f.storage_class:
            continue
        savings = monthly_cost(f.storage_class, f.file_size) - monthly_cost(rec.storage_class, f.file_size)
        if savings > min_savings:
            analysis.recommendations.append(
                CostRecommendation(
                    file_id=f.id,
                    file_name=f.original_name,
                    current_class=f.storage_class,
                    recommended_class=rec.storage_class,
                    monthly_savings=savings,
                    reason=rec.reason,
                )
            )
    analysis.potential_monthly_savings = sum(
        (r.monthly_savings for r in analysis.recommendations), Decimal("0")
    )
    return analysis
