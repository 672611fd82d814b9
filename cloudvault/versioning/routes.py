from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from cloudvault.common.error_envelope import error_response
from cloudvault.common.errors import CloudVaultError
from cloudvault.common.identity import RequestContext, get_request_context
from cloudvault.cost_model.service import parse_storage_class, storage_class_catalogue
from cloudvault.retention.service import get_retention_engine
from cloudvault.tiering.models import OptimizeOptions
from cloudvault.tiering.service import get_tiering_optimizer
from cloudvault.version_store.models import FileIdentity
from cloudvault.versioning.models import DeletedVersion, VersionMetadataUpdate
from cloudvault.versioning.service import get_lifecycle_manager

router = APIRouter(prefix="/files", tags=["versions"])


class OptimizeRequest(BaseModel):
    days_threshold: int = 30
    target_storage_class: str = "STANDARD_IA"
    skip_active_version: bool = True
    transition_blobs: bool = False


class CleanupRequest(BaseModel):
    tier: str = "FREE"
    dry_run: bool = False


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except CloudVaultError as exc:
        error_response(
            code=exc.code,
            message=exc.message,
            status_code=exc.status_code,
            resource_kind=exc.resource_kind,
            details={k: v for k, v in exc.details.items() if isinstance(v, (str, int, float, bool))},
        )
    except ValueError as exc:
        error_response("validation.invalid_request", str(exc), 400)


def _options(payload: OptimizeRequest) -> OptimizeOptions:
    return OptimizeOptions(
        days_threshold=payload.days_threshold,
        target_class=parse_storage_class(payload.target_storage_class),
        skip_active_version=payload.skip_active_version,
        transition_blobs=payload.transition_blobs,
    )


@router.get("/storage-classes")
def list_storage_classes():
    return {"items": storage_class_catalogue()}


@router.get("/statistics")
def version_statistics(context: RequestContext = Depends(get_request_context)):
    with _domain_errors():
        return get_lifecycle_manager().version_statistics(context)


@router.get("/costs/analysis")
def cost_analysis(context: RequestContext = Depends(get_request_context)):
    with _domain_errors():
        return get_lifecycle_manager().cost_analysis(context)


@router.post("/upload")
async def upload_file(
    request: Request,
    name: str = Query(..., min_length=1),
    folder_id: Optional[str] = Query(None),
    storage_class: Optional[str] = Query(None),
    comment: Optional[str] = Query(None),
    context: RequestContext = Depends(get_request_context),
):
    data = await request.body()
    mime_type = request.headers.get("content-type")
    with _domain_errors():
        return await run_in_threadpool(
            get_lifecycle_manager().upload_version,
            context,
            FileIdentity(original_name=name, parent_folder_id=folder_id),
            data,
            mime_type,
            storage_class=storage_class,
            comment=comment,
        )


@router.post("/optimize-all")
def optimize_all(payload: OptimizeRequest, context: RequestContext = Depends(get_request_context)):
    with _domain_errors():
        report = get_tiering_optimizer().optimize_tenant(context, _options(payload))
    return {"message": f"Optimized {report.optimized_count} versions", **report.model_dump()}


@router.post("/cleanup")
def cleanup_versions(payload: CleanupRequest, context: RequestContext = Depends(get_request_context)):
    engine = get_retention_engine()
    with _domain_errors():
        if payload.dry_run:
            return {"items": engine.plan_cleanup(context, payload.tier)}
        report = engine.cleanup(context, payload.tier)
    return {"message": f"Cleaned up {report.cleaned_count} old versions", **report.model_dump()}


@router.delete("/{file_id}")
def delete_file(file_id: str, context: RequestContext = Depends(get_request_context)):
    with _domain_errors():
        released = get_lifecycle_manager().delete_file(context, file_id)
    return {"file_id": file_id, "blobs_released": released}


@router.post("/{file_id}/upgrade")
def upgrade_file(file_id: str, context: RequestContext = Depends(get_request_context)):
    with _domain_errors():
        return get_lifecycle_manager().upgrade_legacy(context, file_id)


@router.get("/{file_id}/versions")
def version_history(
    file_id: str,
    include_costs: bool = Query(True),
    context: RequestContext = Depends(get_request_context),
):
    with _domain_errors():
        history = get_lifecycle_manager().version_history(context, file_id)
    if include_costs:
        return history
    return history.model_dump(exclude={"total_monthly_cost": True, "cost_breakdown": True, "versions": {"__all__": {"monthly_cost"}}})


@router.post("/{file_id}/versions/optimize")
def optimize_file(file_id: str, payload: OptimizeRequest, context: RequestContext = Depends(get_request_context)):
    with _domain_errors():
        report = get_tiering_optimizer().optimize(context, file_id, _options(payload))
    return {"message": f"Optimized {report.optimized_count} versions", **report.model_dump()}


@router.get("/{file_id}/versions/{version_id}")
def get_version(file_id: str, version_id: str, context: RequestContext = Depends(get_request_context)):
    with _domain_errors():
        return get_lifecycle_manager().get_version(context, file_id, version_id)


@router.get("/{file_id}/versions/{version_id}/download")
def download_version(
    file_id: str,
    version_id: str,
    expires_in: int = Query(3600, ge=60, le=7 * 24 * 3600),
    context: RequestContext = Depends(get_request_context),
):
    with _domain_errors():
        return get_lifecycle_manager().download_link(context, file_id, version_id, expires_in=expires_in)


@router.put("/{file_id}/versions/{version_id}/restore")
def restore_version(file_id: str, version_id: str, context: RequestContext = Depends(get_request_context)):
    with _domain_errors():
        file = get_lifecycle_manager().restore_version(context, file_id, version_id)
    return {"message": "Version restored successfully", "file": file}


@router.delete("/{file_id}/versions/{version_id}")
def delete_version(file_id: str, version_id: str, context: RequestContext = Depends(get_request_context)):
    with _domain_errors():
        file, deleted = get_lifecycle_manager().delete_version_and_blob(context, file_id, version_id)
    return DeletedVersion(deleted_version=deleted, remaining_versions=file.total_versions)


@router.patch("/{file_id}/versions/{version_id}")
def update_version(
    file_id: str,
    version_id: str,
    payload: VersionMetadataUpdate,
    context: RequestContext = Depends(get_request_context),
):
    with _domain_errors():
        version = get_lifecycle_manager().update_version_metadata(
            context, file_id, version_id, comment=payload.comment, metadata_patch=payload.metadata
        )
    return {"message": "Version metadata updated successfully", "version": version}
