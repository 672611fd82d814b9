"""Tiering Optimizer: move aged versions to a cheaper storage class.

By default only the recorded class changes; with ``transition_blobs`` the
blob store is also asked to re-tier each object after the metadata commit.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from cloudvault.billing.models import ActivityType
from cloudvault.common.errors import CloudVaultError
from cloudvault.common.identity import RequestContext
from cloudvault.config import runtime_config
from cloudvault.cost_model.service import monthly_cost
from cloudvault.tiering.models import OptimizedVersion, OptimizeFailure, OptimizeOptions, OptimizeReport
from cloudvault.version_store.errors import UnreadableRecord
from cloudvault.version_store.models import VersionedFile
from cloudvault.versioning.service import VersionLifecycleManager, get_lifecycle_manager

logger = logging.getLogger(__name__)


class TieringOptimizer:
    def __init__(self, manager: Optional[VersionLifecycleManager] = None) -> None:
        self.manager = manager or get_lifecycle_manager()

    def optimize(
        self,
        ctx: RequestContext,
        file_id: str,
        options: Optional[OptimizeOptions] = None,
        now: Optional[datetime] = None,
    ) -> OptimizeReport:
        options = options or OptimizeOptions()
        now = now or datetime.now(timezone.utc)
        target = options.target_class
        items: List[OptimizedVersion] = []

        def apply(current):
            items.clear()
            if not isinstance(current, VersionedFile):
                return
            active_changed = False
            for version in current.versions:
                if options.skip_active_version and version.is_active:
                    continue
                if version.age_days(now) < options.days_threshold or version.storage_class == target:
                    continue
                old = version.storage_class
                savings = monthly_cost(old, version.file_size) - monthly_cost(target, version.file_size)
                version.storage_class = target
                active_changed = active_changed or version.is_active
                items.append(
                    OptimizedVersion(
                        file_id=current.id,
                        version_id=version.version_id,
                        version_number=version.version_number,
                        old_storage_class=old,
                        new_storage_class=target,
                        file_size=version.file_size,
                        blob_key=version.blob_key,
                        savings=savings,
                    )
                )
            if active_changed:
                current.sync_mirror()

        self.manager.store.mutate(ctx.tenant_id, file_id, apply)
        report = OptimizeReport(files_scanned=1)
        report.extend(OptimizeReport(items=list(items)))
        if items:
            logger.info(
                "Re-tiered %s versions of %s/%s to %s (saves %s/month)",
                len(items), ctx.tenant_id, file_id, target.value, report.total_savings,
            )
        for item in items:
            self.manager.billing.record(
                ctx.tenant_id,
                ActivityType.STORAGE_OPTIMIZATION,
                {
                    "file_id": file_id,
                    "version_id": item.version_id,
                    "old_storage_class": item.old_storage_class.value,
                    "new_storage_class": item.new_storage_class.value,
                    "file_size": item.file_size,
                    "savings": str(item.savings),
                },
            )
        if options.transition_blobs and items:
            self._transition(items, report)
        return report

    def _transition(self, items: List[OptimizedVersion], report: OptimizeReport) -> None:
        transition = getattr(self.manager.blob_store, "transition", None)
        if transition is None:
            logger.warning("Blob store %s cannot transition objects", type(self.manager.blob_store).__name__)
            return
        timeout = runtime_config.get_blob_store_timeout()
        for item in items:
            try:
                transition(item.blob_key, item.new_storage_class, timeout=timeout)
            except Exception as exc:
                logger.warning("Transition of %s to %s failed: %s", item.blob_key, item.new_storage_class.value, exc)
                report.failures.append(
                    OptimizeFailure(
                        file_id=item.file_id,
                        version_id=item.version_id,
                        code=getattr(exc, "code", "blob_store.transition_failed"),
                        message=str(exc),
                    )
                )

    def optimize_tenant(
        self,
        ctx: RequestContext,
        options: Optional[OptimizeOptions] = None,
        now: Optional[datetime] = None,
    ) -> OptimizeReport:
        """Run ``optimize`` over every versioned file; one bad file does not stop the run."""
        options = options or OptimizeOptions()
        report = OptimizeReport()

        def unreadable(ref: str, exc: Exception) -> None:
            logger.error("Skipping unreadable record %s/%s during optimization: %s", ctx.tenant_id, ref, exc)
            report.failures.append(OptimizeFailure(file_id=ref, code=UnreadableRecord.code, message=str(exc)))

        for file in self.manager.store.list_by_tenant(ctx.tenant_id, on_unreadable=unreadable):
            if not isinstance(file, VersionedFile):
                continue
            report.files_scanned += 1
            try:
                report.extend(self.optimize(ctx, file.id, options, now=now))
            except Exception as exc:
                logger.error("Optimizing %s/%s failed: %s", ctx.tenant_id, file.id, exc)
                code = exc.code if isinstance(exc, CloudVaultError) else "tiering.optimize_failed"
                report.failures.append(OptimizeFailure(file_id=file.id, code=code, message=str(exc)))
        logger.info(
            "Tenant optimization for %s: %s versions across %s files, %s failures",
            ctx.tenant_id, report.optimized_count, report.files_scanned, len(report.failures),
        )
        return report


_default_optimizer: Optional[TieringOptimizer] = None


def get_tiering_optimizer() -> TieringOptimizer:
    global _default_optimizer
    if _default_optimizer is None:
        _default_optimizer = TieringOptimizer()
    return _default_optimizer


def set_tiering_optimizer(optimizer: Optional[TieringOptimizer]) -> None:
    global _default_optimizer
    _default_optimizer = optimizer
