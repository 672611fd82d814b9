"""Version Lifecycle Manager.

Owns every change to a file's version list. Each operation is a single
``VersionStore.mutate`` call, so a concurrent upload, restore or delete on
the same file is serialized by the store; blob and billing side effects run
after the mutation commits.
"""
from __future__ import annotations

import hashlib
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from cloudvault.billing.models import ActivityType
from cloudvault.billing.service import BillingService, get_billing_service
from cloudvault.blob_store.models import build_blob_key
from cloudvault.blob_store.repository import BlobStore
from cloudvault.blob_store.state import get_blob_store
from cloudvault.common.identity import RequestContext
from cloudvault.config import runtime_config
from cloudvault.cost_model.models import CostAnalysis, StorageClass
from cloudvault.cost_model.service import (
    analyze_costs,
    cost_breakdown,
    monthly_cost,
    parse_storage_class,
    recommend_class,
)
from cloudvault.version_store.errors import (
    CannotDeleteActiveVersion,
    CannotDeleteOnlyVersion,
    VersionNotFound,
)
from cloudvault.version_store.models import (
    INITIAL_VERSION_COMMENT,
    LEGACY_CONVERSION_COMMENT,
    FileIdentity,
    FileVersion,
    UnversionedFile,
    VersionedFile,
    VersionPayload,
    upgrade_to_versioned,
)
from cloudvault.version_store.repository import VersionStore
from cloudvault.version_store.state import get_version_store
from cloudvault.versioning.models import (
    DownloadLink,
    VersionDetail,
    VersionHistory,
    VersionStatistics,
    VersionWithCost,
)

logger = logging.getLogger(__name__)


def _find_or_raise(file: Union[UnversionedFile, VersionedFile], version_id: str) -> FileVersion:
    version = file.find_version(version_id) if isinstance(file, VersionedFile) else None
    if version is None:
        raise VersionNotFound(f"version {version_id} not found on file {file.id}", file_id=file.id, version_id=version_id)
    return version


class VersionLifecycleManager:
    def __init__(
        self,
        store: Optional[VersionStore] = None,
        blob_store: Optional[BlobStore] = None,
        billing: Optional[BillingService] = None,
    ) -> None:
        self.store = store or get_version_store()
        self.blob_store = blob_store or get_blob_store()
        self.billing = billing or get_billing_service()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def create_or_new_version(self, ctx: RequestContext, identity: FileIdentity, payload: VersionPayload) -> VersionedFile:
        """Record an upload: a new file, or a new active version of an existing one."""
        uploaded_by = ctx.actor
        with self.store.identity_lock(ctx.tenant_id, identity.original_name, identity.parent_folder_id):
            existing = self.store.find_by_identity(ctx.tenant_id, identity.original_name, identity.parent_folder_id)
            if existing is None:
                file = self._new_file(ctx, identity, payload, uploaded_by)
                self.store.insert(ctx.tenant_id, file)
            else:
                file = self.store.mutate(
                    ctx.tenant_id,
                    existing.id,
                    lambda current: self._append_version(current, payload, uploaded_by),
                )
        version = file.active_version()
        logger.info(
            "Stored version %s of %s/%s (%s bytes, %s)",
            version.version_number, ctx.tenant_id, file.id, version.file_size, version.storage_class.value,
        )
        self.billing.record(
            ctx.tenant_id,
            ActivityType.VERSION_UPLOAD,
            {
                "file_id": file.id,
                "file_name": file.original_name,
                "version_id": version.version_id,
                "version_number": version.version_number,
                "file_size": version.file_size,
                "storage_class": version.storage_class.value,
                "monthly_cost": str(monthly_cost(version.storage_class, version.file_size)),
            },
        )
        return file

    @staticmethod
    def _new_file(
        ctx: RequestContext, identity: FileIdentity, payload: VersionPayload, uploaded_by: str
    ) -> VersionedFile:
        version = FileVersion(
            version_number=1,
            blob_key=payload.blob_key,
            file_size=payload.file_size,
            storage_class=payload.storage_class,
            upload_date=payload.upload_date,
            uploaded_by=uploaded_by,
            comment=payload.comment or INITIAL_VERSION_COMMENT,
            is_active=True,
            checksum=payload.checksum,
            metadata=dict(payload.metadata),
        )
        file = VersionedFile(
            tenant_id=ctx.tenant_id,
            original_name=identity.original_name,
            parent_folder_id=identity.parent_folder_id,
            mime_type=payload.mime_type,
            blob_key=payload.blob_key,
            versions=[version],
        )
        file.sync_mirror()
        return file

    @staticmethod
    def _append_version(
        current: Union[UnversionedFile, VersionedFile], payload: VersionPayload, uploaded_by: str
    ) -> VersionedFile:
        file = upgrade_to_versioned(current, uploaded_by)
        number = file.next_version_number()
        version = FileVersion(
            version_number=number,
            blob_key=payload.blob_key,
            file_size=payload.file_size,
            storage_class=payload.storage_class,
            upload_date=payload.upload_date,
            uploaded_by=uploaded_by,
            comment=payload.comment or f"Version {number}",
            checksum=payload.checksum,
            metadata=dict(payload.metadata),
        )
        file.versions.append(version)
        file.activate(version)
        if payload.mime_type:
            file.mime_type = payload.mime_type
        return file

    def restore_version(self, ctx: RequestContext, file_id: str, version_id: str) -> VersionedFile:
        """Make an existing version current again; no new version is created."""

        def apply(current):
            target = _find_or_raise(current, version_id)
            current.activate(target)

        file = self.store.mutate(ctx.tenant_id, file_id, apply)
        logger.info("Restored %s/%s to version %s", ctx.tenant_id, file_id, file.current_version_number)
        self.billing.record(
            ctx.tenant_id,
            ActivityType.VERSION_RESTORE,
            {"file_id": file_id, "version_id": version_id, "file_name": file.original_name},
        )
        return file

    def delete_version(self, ctx: RequestContext, file_id: str, version_id: str) -> Tuple[VersionedFile, FileVersion]:
        """Remove an inactive version record. The blob is left to the caller."""
        removed: List[FileVersion] = []

        def apply(current):
            target = _find_or_raise(current, version_id)
            if len(current.versions) == 1:
                raise CannotDeleteOnlyVersion(
                    "cannot delete the only version of a file", file_id=file_id, version_id=version_id
                )
            if target.is_active:
                raise CannotDeleteActiveVersion(
                    "cannot delete the active version; restore another version first",
                    file_id=file_id,
                    version_id=version_id,
                )
            current.versions = [v for v in current.versions if v.version_id != version_id]
            current.total_versions = len(current.versions)
            removed[:] = [target]

        file = self.store.mutate(ctx.tenant_id, file_id, apply)
        deleted = removed[0]
        logger.info("Deleted version %s of %s/%s", deleted.version_number, ctx.tenant_id, file_id)
        self.billing.record(
            ctx.tenant_id,
            ActivityType.VERSION_DELETE,
            {
                "file_id": file_id,
                "version_id": version_id,
                "file_name": file.original_name,
                "freed_space": deleted.file_size,
            },
        )
        return file, deleted

    def delete_version_and_blob(
        self, ctx: RequestContext, file_id: str, version_id: str, timeout: Optional[float] = None
    ) -> Tuple[VersionedFile, FileVersion]:
        file, deleted = self.delete_version(ctx, file_id, version_id)
        self.release_blob(deleted.blob_key, timeout=timeout)
        return file, deleted

    def release_blob(self, blob_key: str, timeout: Optional[float] = None) -> bool:
        """Best-effort blob delete; the metadata change has already committed."""
        try:
            self.blob_store.delete(blob_key, timeout=timeout or runtime_config.get_blob_store_timeout())
        except Exception:
            logger.warning("Failed to release blob %s", blob_key, exc_info=True)
            return False
        return True

    def update_version_metadata(
        self,
        ctx: RequestContext,
        file_id: str,
        version_id: str,
        comment: Optional[str] = None,
        metadata_patch: Optional[Dict[str, Any]] = None,
    ) -> FileVersion:
        def apply(current):
            target = _find_or_raise(current, version_id)
            if comment is not None:
                target.comment = comment
            if metadata_patch:
                target.metadata = {**target.metadata, **metadata_patch}

        file = self.store.mutate(ctx.tenant_id, file_id, apply)
        return _find_or_raise(file, version_id)

    def upgrade_legacy(
        self, ctx: RequestContext, file_id: str, comment: str = LEGACY_CONVERSION_COMMENT
    ) -> VersionedFile:
        """Convert a legacy record in place; a versioned file is returned untouched."""
        current = self.store.get(ctx.tenant_id, file_id)
        if isinstance(current, VersionedFile):
            return current
        file = self.store.mutate(
            ctx.tenant_id, file_id, lambda stored: upgrade_to_versioned(stored, ctx.actor, comment=comment)
        )
        logger.info("Upgraded legacy file %s/%s", ctx.tenant_id, file_id)
        return file

    def delete_file(self, ctx: RequestContext, file_id: str, timeout: Optional[float] = None) -> int:
        """Drop the whole aggregate, then release every blob it referenced."""
        file = self.store.delete(ctx.tenant_id, file_id)
        keys = {v.blob_key for v in file.versions} if isinstance(file, VersionedFile) else {file.blob_key}
        released = sum(1 for key in sorted(keys) if self.release_blob(key, timeout=timeout))
        logger.info("Deleted file %s/%s (%s/%s blobs released)", ctx.tenant_id, file_id, released, len(keys))
        return released

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------
    def upload_version(
        self,
        ctx: RequestContext,
        identity: FileIdentity,
        data: bytes,
        mime_type: Optional[str],
        storage_class: Optional[Union[str, StorageClass]] = None,
        comment: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> VersionedFile:
        """Put bytes in the blob store, then record them as a version.

        The blob write happens before (and outside) the metadata mutation; if
        recording fails, the orphaned blob is released.
        """
        if storage_class:
            sc = parse_storage_class(storage_class)
        else:
            sc = recommend_class(mime_type, len(data), identity.original_name).storage_class
        key = build_blob_key(ctx.tenant_id, uuid4().hex, identity.original_name)
        self.blob_store.put(key, data, sc, timeout=timeout or runtime_config.get_blob_store_timeout())
        payload = VersionPayload(
            blob_key=key,
            file_size=len(data),
            storage_class=sc,
            comment=comment,
            checksum=hashlib.sha256(data).hexdigest(),
            mime_type=mime_type,
        )
        try:
            return self.create_or_new_version(ctx, identity, payload)
        except Exception:
            logger.error("Recording upload of %s failed; releasing blob %s", identity.original_name, key)
            self.release_blob(key, timeout=timeout)
            raise

    # ------------------------------------------------------------------
    # Reads and reports
    # ------------------------------------------------------------------
    def _load_versioned(self, ctx: RequestContext, file_id: str) -> VersionedFile:
        current = self.store.get(ctx.tenant_id, file_id)
        if isinstance(current, VersionedFile):
            return current
        return self.upgrade_legacy(ctx, file_id)

    def get_version(self, ctx: RequestContext, file_id: str, version_id: str) -> VersionDetail:
        file = self._load_versioned(ctx, file_id)
        version = _find_or_raise(file, version_id)
        return VersionDetail(**version.model_dump(), file_id=file.id, file_name=file.original_name)

    def version_history(self, ctx: RequestContext, file_id: str) -> VersionHistory:
        file = self._load_versioned(ctx, file_id)
        versions = [
            VersionWithCost(**v.model_dump(), monthly_cost=monthly_cost(v.storage_class, v.file_size))
            for v in sorted(file.versions, key=lambda v: v.version_number, reverse=True)
        ]
        return VersionHistory(
            file_id=file.id,
            original_name=file.original_name,
            current_version_number=file.current_version_number,
            total_versions=file.total_versions,
            versions=versions,
            total_monthly_cost=sum((v.monthly_cost for v in versions), Decimal("0")),
            total_size=sum(v.file_size for v in versions),
            cost_breakdown=cost_breakdown(file.versions),
        )

    def download_link(self, ctx: RequestContext, file_id: str, version_id: str, expires_in: int = 3600) -> DownloadLink:
        detail = self.get_version(ctx, file_id, version_id)
        url = self.blob_store.download_url(detail.blob_key, expires_in=expires_in)
        self.billing.record(
            ctx.tenant_id,
            ActivityType.VERSION_DOWNLOAD,
            {"file_id": file_id, "version_id": version_id, "file_name": detail.file_name},
        )
        return DownloadLink(
            download_url=url,
            file_name=detail.file_name,
            file_size=detail.file_size,
            version_number=detail.version_number,
        )

    def version_statistics(self, ctx: RequestContext) -> VersionStatistics:
        files = self.store.list_by_tenant(ctx.tenant_id)
        versions = [v for f in files if isinstance(f, VersionedFile) for v in f.versions]
        breakdown = cost_breakdown(versions)
        return VersionStatistics(
            total_files=len(files),
            total_versions=len(versions),
            average_versions_per_file=(len(versions) / len(files)) if files else 0.0,
            total_version_size=sum(v.file_size for v in versions),
            total_version_cost=sum((e.total_cost for e in breakdown.values()), Decimal("0")),
            storage_class_breakdown=breakdown,
        )

    def cost_analysis(self, ctx: RequestContext) -> CostAnalysis:
        return analyze_costs(self.store.list_by_tenant(ctx.tenant_id))


_default_manager: Optional[VersionLifecycleManager] = None


def get_lifecycle_manager() -> VersionLifecycleManager:
    global _default_manager
    if _default_manager is None:
        _default_manager = VersionLifecycleManager()
    return _default_manager


def set_lifecycle_manager(manager: Optional[VersionLifecycleManager]) -> None:
    global _default_manager
    _default_manager = manager
