"""Retention Policy Engine: tier-driven cleanup of inactive versions."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Union

from cloudvault.billing.models import ActivityType
from cloudvault.common.errors import CloudVaultError
from cloudvault.common.identity import RequestContext
from cloudvault.cost_model.models import StorageClass
from cloudvault.cost_model.service import monthly_cost
from cloudvault.retention.models import (
    CleanupFailure,
    CleanupItem,
    CleanupReport,
    PlannedDeletion,
    TierPolicy,
    UnknownTierPolicy,
)
from cloudvault.version_store.errors import UnreadableRecord
from cloudvault.version_store.models import VersionedFile
from cloudvault.versioning.service import VersionLifecycleManager, get_lifecycle_manager

logger = logging.getLogger(__name__)

TIER_POLICIES: Dict[str, TierPolicy] = {
    "FREE": TierPolicy(
        name="FREE",
        max_versions=3,
        auto_delete_after_days=30,
        allowed_storage_classes=(StorageClass.STANDARD, StorageClass.STANDARD_IA),
    ),
    "PRO": TierPolicy(
        name="PRO",
        max_versions=10,
        auto_delete_after_days=90,
        allowed_storage_classes=(
            StorageClass.STANDARD,
            StorageClass.STANDARD_IA,
            StorageClass.ONEZONE_IA,
            StorageClass.GLACIER_IR,
        ),
    ),
    "BUSINESS": TierPolicy(
        name="BUSINESS",
        max_versions=-1,
        auto_delete_after_days=365,
        allowed_storage_classes=tuple(StorageClass),
    ),
}


def get_tier_policy(name: Union[str, TierPolicy]) -> TierPolicy:
    if isinstance(name, TierPolicy):
        return name
    policy = TIER_POLICIES.get((name or "").strip().upper())
    if policy is None:
        raise UnknownTierPolicy(f"unknown tier policy: {name}", tier=name)
    return policy


def select_versions(file: VersionedFile, policy: TierPolicy, now: datetime) -> List[PlannedDeletion]:
    """Pick the inactive versions ``policy`` says must go, oldest first.

    Age pass: anything strictly older than ``auto_delete_after_days``.
    Count pass: while more than ``max_versions`` would survive, the oldest
    remaining inactive versions. The active version is never a candidate.
    """
    if len(file.versions) <= 1:
        return []
    candidates = sorted((v for v in file.versions if not v.is_active), key=lambda v: v.upload_date)
    reasons: Dict[str, str] = {}
    for version in candidates:
        if version.age_days(now) > policy.auto_delete_after_days:
            reasons[version.version_id] = "age"
    if policy.max_versions >= 0:
        surviving = len(file.versions) - len(reasons)
        for version in candidates:
            if surviving <= policy.max_versions:
                break
            if version.version_id in reasons:
                continue
            reasons[version.version_id] = "count"
            surviving -= 1
    return [
        PlannedDeletion(
            file_id=file.id,
            file_name=file.original_name,
            version_id=v.version_id,
            version_number=v.version_number,
            file_size=v.file_size,
            storage_class=v.storage_class,
            blob_key=v.blob_key,
            reason=reasons[v.version_id],
        )
        for v in candidates
        if v.version_id in reasons
    ]


class RetentionPolicyEngine:
    def __init__(self, manager: Optional[VersionLifecycleManager] = None) -> None:
        self.manager = manager or get_lifecycle_manager()

    def plan_cleanup(
        self, ctx: RequestContext, tier: Union[str, TierPolicy], now: Optional[datetime] = None
    ) -> List[PlannedDeletion]:
        """Dry run: what ``cleanup`` would delete right now."""
        return self._plan(ctx, get_tier_policy(tier), now)

    def _plan(
        self,
        ctx: RequestContext,
        policy: TierPolicy,
        now: Optional[datetime],
        failures: Optional[List[CleanupFailure]] = None,
    ) -> List[PlannedDeletion]:
        now = now or datetime.now(timezone.utc)

        def unreadable(ref: str, exc: Exception) -> None:
            logger.error("Skipping unreadable record %s/%s during cleanup: %s", ctx.tenant_id, ref, exc)
            if failures is not None:
                failures.append(CleanupFailure(file_id=ref, code=UnreadableRecord.code, message=str(exc)))

        planned: List[PlannedDeletion] = []
        for file in self.manager.store.list_by_tenant(ctx.tenant_id, on_unreadable=unreadable):
            if isinstance(file, VersionedFile):
                planned.extend(select_versions(file, policy, now))
        return planned

    def cleanup(
        self, ctx: RequestContext, tier: Union[str, TierPolicy], now: Optional[datetime] = None
    ) -> CleanupReport:
        policy = get_tier_policy(tier)
        report = CleanupReport(tier=policy.name)
        for planned in self._plan(ctx, policy, now, failures=report.failures):
            try:
                _, deleted = self.manager.delete_version(ctx, planned.file_id, planned.version_id)
            except Exception as exc:
                logger.error(
                    "Cleanup of version %s on %s/%s failed: %s",
                    planned.version_id, ctx.tenant_id, planned.file_id, exc,
                )
                report.failures.append(
                    CleanupFailure(
                        file_id=planned.file_id,
                        version_id=planned.version_id,
                        code=exc.code if isinstance(exc, CloudVaultError) else "retention.cleanup_failed",
                        message=str(exc),
                    )
                )
                continue
            released = self.manager.release_blob(deleted.blob_key)
            if not released:
                report.warnings.append(f"blob {deleted.blob_key} could not be released")
            report.items.append(
                CleanupItem(
                    file_id=planned.file_id,
                    file_name=planned.file_name,
                    version_id=deleted.version_id,
                    version_number=deleted.version_number,
                    freed_bytes=deleted.file_size,
                    saved_cost=monthly_cost(deleted.storage_class, deleted.file_size),
                    reason=planned.reason,
                    blob_released=released,
                )
            )
        report.cleaned_count = len(report.items)
        report.freed_bytes = sum(item.freed_bytes for item in report.items)
        report.saved_cost = sum((item.saved_cost for item in report.items), Decimal("0"))
        logger.info(
            "Cleanup (%s) for %s removed %s versions, %s failures",
            policy.name, ctx.tenant_id, report.cleaned_count, len(report.failures),
        )
        if report.cleaned_count:
            self.manager.billing.record(
                ctx.tenant_id,
                ActivityType.VERSION_CLEANUP,
                {
                    "tier": policy.name,
                    "cleaned_count": report.cleaned_count,
                    "freed_bytes": report.freed_bytes,
                    "saved_cost": str(report.saved_cost),
                },
            )
        return report


_default_engine: Optional[RetentionPolicyEngine] = None


def get_retention_engine() -> RetentionPolicyEngine:
    global _default_engine
    if _default_engine is None:
        _default_engine = RetentionPolicyEngine()
    return _default_engine


def set_retention_engine(engine: Optional[RetentionPolicyEngine]) -> None:
    global _default_engine
    _default_engine = engine
