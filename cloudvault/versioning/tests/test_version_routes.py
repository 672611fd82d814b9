from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from cloudvault.billing.repository import InMemoryBillingRepository
from cloudvault.billing.service import BillingService
from cloudvault.blob_store.repository import InMemoryBlobStore
from cloudvault.common.identity import RequestContext
from cloudvault.retention.service import RetentionPolicyEngine, set_retention_engine
from cloudvault.tiering.service import TieringOptimizer, set_tiering_optimizer
from cloudvault.version_store.models import FileIdentity, VersionPayload
from cloudvault.version_store.repository import InMemoryVersionStore
from cloudvault.versioning.routes import router as versions_router
from cloudvault.versioning.service import VersionLifecycleManager, set_lifecycle_manager

TENANT = "t_routes"


@pytest.fixture
def manager():
    mgr = VersionLifecycleManager(
        store=InMemoryVersionStore(),
        blob_store=InMemoryBlobStore(),
        billing=BillingService(repo=InMemoryBillingRepository()),
    )
    set_lifecycle_manager(mgr)
    set_tiering_optimizer(TieringOptimizer(mgr))
    set_retention_engine(RetentionPolicyEngine(mgr))
    yield mgr
    set_lifecycle_manager(None)
    set_tiering_optimizer(None)
    set_retention_engine(None)


@pytest.fixture
def client(manager):
    app = FastAPI()
    app.include_router(versions_router)
    return TestClient(app)


def _headers():
    return {"X-Tenant-Id": TENANT, "X-User-Id": "u_route", "X-Env": "dev"}


def _seed(manager, count=2, age_days=0):
    ctx = RequestContext(tenant_id=TENANT, env="dev", user_id="u_route")
    identity = FileIdentity(original_name="notes.txt")
    when = datetime.now(timezone.utc) - timedelta(days=age_days)
    file = None
    for n in range(1, count + 1):
        payload = VersionPayload(blob_key=f"k{n}", file_size=1024 * n, upload_date=when)
        file = manager.create_or_new_version(ctx, identity, payload)
    return file


def test_missing_tenant_header_is_rejected(client):
    resp = client.get("/files/statistics")
    assert resp.status_code == 400


def test_history_with_and_without_costs(client, manager):
    file = _seed(manager, 2)
    resp = client.get(f"/files/{file.id}/versions", headers=_headers())
    assert resp.status_code == 200
    body = resp.json()
    assert [v["version_number"] for v in body["versions"]] == [2, 1]
    assert "monthly_cost" in body["versions"][0]

    bare = client.get(f"/files/{file.id}/versions", params={"include_costs": "false"}, headers=_headers()).json()
    assert "total_monthly_cost" not in bare
    assert "monthly_cost" not in bare["versions"][0]


def test_unknown_file_maps_to_404_envelope(client, manager):
    resp = client.get("/files/nope/versions", headers=_headers())
    assert resp.status_code == 404
    assert resp.json()["detail"]["error"]["code"] == "version_store.file_not_found"


def test_restore_and_delete_flow(client, manager):
    file = _seed(manager, 2)
    v1, v2 = file.versions

    resp = client.delete(f"/files/{file.id}/versions/{v2.version_id}", headers=_headers())
    assert resp.status_code == 409
    assert resp.json()["detail"]["error"]["code"] == "versioning.cannot_delete_active_version"

    resp = client.put(f"/files/{file.id}/versions/{v1.version_id}/restore", headers=_headers())
    assert resp.status_code == 200
    assert resp.json()["file"]["current_version_number"] == 1

    resp = client.delete(f"/files/{file.id}/versions/{v2.version_id}", headers=_headers())
    assert resp.status_code == 200
    assert resp.json()["remaining_versions"] == 1


def test_patch_metadata(client, manager):
    file = _seed(manager, 1)
    vid = file.versions[0].version_id
    resp = client.patch(
        f"/files/{file.id}/versions/{vid}", json={"comment": "signed", "metadata": {"reviewer": "bo"}}, headers=_headers()
    )
    assert resp.status_code == 200
    assert resp.json()["version"]["comment"] == "signed"
    got = client.get(f"/files/{file.id}/versions/{vid}", headers=_headers()).json()
    assert got["metadata"] == {"reviewer": "bo"}
    assert got["file_name"] == "notes.txt"


def test_optimize_rejects_unknown_class(client, manager):
    file = _seed(manager, 2, age_days=45)
    resp = client.post(
        f"/files/{file.id}/versions/optimize", json={"target_storage_class": "TAPE"}, headers=_headers()
    )
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"]["code"] == "cost_model.invalid_storage_class"


def test_optimize_and_optimize_all(client, manager):
    file = _seed(manager, 2, age_days=45)
    resp = client.post(f"/files/{file.id}/versions/optimize", json={}, headers=_headers())
    assert resp.status_code == 200
    assert resp.json()["optimized_count"] == 1

    resp = client.post("/files/optimize-all", json={"skip_active_version": False}, headers=_headers())
    assert resp.status_code == 200
    assert resp.json()["optimized_count"] == 1


def test_cleanup_unknown_tier_and_dry_run(client, manager):
    _seed(manager, 5)
    assert client.post("/files/cleanup", json={"tier": "GOLD"}, headers=_headers()).status_code == 400

    plan = client.post("/files/cleanup", json={"tier": "FREE", "dry_run": True}, headers=_headers()).json()
    assert len(plan["items"]) == 2

    resp = client.post("/files/cleanup", json={"tier": "FREE"}, headers=_headers())
    assert resp.json()["cleaned_count"] == 2


def test_statistics_and_catalogue(client, manager):
    _seed(manager, 3)
    stats = client.get("/files/statistics", headers=_headers()).json()
    assert stats["total_files"] == 1
    assert stats["total_versions"] == 3
    catalogue = client.get("/files/storage-classes").json()["items"]
    assert len(catalogue) == 7


def test_upload_and_download(client, manager):
    resp = client.post(
        "/files/upload",
        params={"name": "photo.jpg"},
        content=b"\xff\xd8jpegbytes",
        headers={**_headers(), "Content-Type": "image/jpeg"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["storage_class"] == "STANDARD"
    version_id = body["versions"][0]["version_id"]

    link = client.get(f"/files/{body['id']}/versions/{version_id}/download", headers=_headers())
    assert link.status_code == 200
    assert link.json()["download_url"].startswith("mem://")


def test_delete_file_releases_blobs(client, manager):
    resp = client.post("/files/upload", params={"name": "a.txt"}, content=b"one", headers=_headers())
    file_id = resp.json()["id"]
    client.post("/files/upload", params={"name": "a.txt"}, content=b"two", headers=_headers())
    resp = client.delete(f"/files/{file_id}", headers=_headers())
    assert resp.status_code == 200
    assert resp.json()["blobs_released"] == 2
    assert client.get(f"/files/{file_id}/versions", headers=_headers()).status_code == 404


def test_app_factory_serves_health_and_versions(manager):
    from cloudvault.app import create_app

    client = TestClient(create_app())
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/files/statistics", headers=_headers()).json()["total_files"] == 0
