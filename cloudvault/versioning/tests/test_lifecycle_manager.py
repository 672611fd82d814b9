from __future__ import annotations

import threading
from decimal import Decimal
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from cloudvault.billing.models import ActivityType
from cloudvault.billing.repository import InMemoryBillingRepository
from cloudvault.billing.service import BillingService
from cloudvault.blob_store.repository import InMemoryBlobStore
from cloudvault.common.identity import RequestContext
from cloudvault.cost_model.models import StorageClass
from cloudvault.cost_model.service import monthly_cost
from cloudvault.version_store.errors import (
    CannotDeleteActiveVersion,
    CannotDeleteOnlyVersion,
    FileNotFound,
    VersionNotFound,
)
from cloudvault.version_store.models import (
    INITIAL_VERSION_COMMENT,
    LEGACY_CONVERSION_COMMENT,
    FileIdentity,
    UnversionedFile,
    VersionedFile,
    VersionPayload,
)
from cloudvault.version_store.repository import FilesystemVersionStore, InMemoryVersionStore
from cloudvault.versioning.service import VersionLifecycleManager

TENANT = "t_life"
MB = 1024 * 1024


def _manager():
    billing = BillingService(repo=InMemoryBillingRepository())
    return VersionLifecycleManager(store=InMemoryVersionStore(), blob_store=InMemoryBlobStore(), billing=billing)


def _ctx(user="u_alice"):
    return RequestContext(tenant_id=TENANT, env="dev", user_id=user)


def _payload(n: int, size: int = 100, **kwargs) -> VersionPayload:
    return VersionPayload(blob_key=f"tenants/{TENANT}/files/b{n}/doc.txt", file_size=size, **kwargs)


IDENTITY = FileIdentity(original_name="doc.txt", parent_folder_id=None)


def _file_with_versions(manager, count: int) -> VersionedFile:
    file = None
    for n in range(1, count + 1):
        file = manager.create_or_new_version(_ctx(), IDENTITY, _payload(n, size=n * 100))
    return file


def test_first_upload_creates_single_active_version():
    manager = _manager()
    file = manager.create_or_new_version(_ctx(), IDENTITY, _payload(1))
    assert file.total_versions == 1
    version = file.active_version()
    assert version.version_number == 1
    assert version.comment == INITIAL_VERSION_COMMENT
    assert version.uploaded_by == "u_alice"
    file.check_invariants()


def test_second_upload_appends_and_activates():
    manager = _manager()
    file = _file_with_versions(manager, 2)
    assert file.total_versions == 2
    assert file.current_version_number == 2
    assert [v.is_active for v in file.versions] == [False, True]
    assert file.versions[1].comment == "Version 2"
    assert file.file_size == 200
    assert file.blob_key == file.versions[1].blob_key


def test_same_name_in_other_folder_is_a_new_file():
    manager = _manager()
    first = manager.create_or_new_version(_ctx(), IDENTITY, _payload(1))
    other = manager.create_or_new_version(_ctx(), FileIdentity(original_name="doc.txt", parent_folder_id="d1"), _payload(2))
    assert first.id != other.id
    assert other.total_versions == 1


def test_upload_onto_legacy_file_upgrades_then_appends():
    manager = _manager()
    legacy = UnversionedFile(
        id="legacy1",
        tenant_id=TENANT,
        original_name="doc.txt",
        blob_key="old-key",
        file_size=5,
        upload_date=datetime(2023, 1, 1, tzinfo=timezone.utc),
    )
    manager.store.insert(TENANT, legacy)
    file = manager.create_or_new_version(_ctx(), IDENTITY, _payload(2))
    assert file.id == "legacy1"
    assert [v.version_number for v in file.versions] == [1, 2]
    assert file.versions[0].comment == LEGACY_CONVERSION_COMMENT
    assert file.versions[0].blob_key == "old-key"
    assert file.active_version().version_number == 2


def test_restore_moves_pointer_without_new_version():
    manager = _manager()
    file = _file_with_versions(manager, 3)
    v1 = file.versions[0]
    restored = manager.restore_version(_ctx(), file.id, v1.version_id)
    assert restored.total_versions == 3
    assert restored.current_version_number == 1
    assert restored.file_size == v1.file_size
    assert restored.upload_date == v1.upload_date
    assert sum(v.is_active for v in restored.versions) == 1


def test_upload_after_restore_keeps_numbers_unique():
    manager = _manager()
    file = _file_with_versions(manager, 3)
    manager.restore_version(_ctx(), file.id, file.versions[0].version_id)
    after = manager.create_or_new_version(_ctx(), IDENTITY, _payload(4))
    assert [v.version_number for v in after.versions] == [1, 2, 3, 4]
    assert after.current_version_number == 4


def test_restore_unknown_version():
    manager = _manager()
    file = _file_with_versions(manager, 1)
    with pytest.raises(VersionNotFound):
        manager.restore_version(_ctx(), file.id, "nope")


def test_delete_refusals_in_order():
    manager = _manager()
    file = _file_with_versions(manager, 1)
    with pytest.raises(VersionNotFound):
        manager.delete_version(_ctx(), file.id, "nope")
    with pytest.raises(CannotDeleteOnlyVersion):
        manager.delete_version(_ctx(), file.id, file.versions[0].version_id)
    file = manager.create_or_new_version(_ctx(), IDENTITY, _payload(2))
    with pytest.raises(CannotDeleteActiveVersion):
        manager.delete_version(_ctx(), file.id, file.active_version().version_id)
    assert manager.store.get(TENANT, file.id).total_versions == 2


def test_delete_inactive_version_and_blob():
    manager = _manager()
    manager.blob_store.put(f"tenants/{TENANT}/files/b1/doc.txt", b"x" * 100, "STANDARD")
    file = _file_with_versions(manager, 2)
    updated, deleted = manager.delete_version_and_blob(_ctx(), file.id, file.versions[0].version_id)
    assert deleted.version_number == 1
    assert updated.total_versions == 1
    assert updated.current_version_number == 2
    assert not manager.blob_store.exists(deleted.blob_key)


def test_blob_failure_on_delete_is_only_a_warning():
    manager = _manager()
    manager.blob_store = mock.MagicMock()
    manager.blob_store.delete.side_effect = RuntimeError("s3 down")
    file = _file_with_versions(manager, 2)
    updated, _ = manager.delete_version_and_blob(_ctx(), file.id, file.versions[0].version_id)
    assert updated.total_versions == 1


def test_update_version_metadata_merges():
    manager = _manager()
    file = _file_with_versions(manager, 1)
    vid = file.versions[0].version_id
    manager.update_version_metadata(_ctx(), file.id, vid, metadata_patch={"a": 1})
    version = manager.update_version_metadata(_ctx(), file.id, vid, comment="final", metadata_patch={"b": 2})
    assert version.comment == "final"
    assert version.metadata == {"a": 1, "b": 2}


def test_upgrade_legacy_is_idempotent():
    manager = _manager()
    manager.store.insert(
        TENANT, UnversionedFile(id="old", tenant_id=TENANT, original_name="x.bin", blob_key="k", file_size=1)
    )
    first = manager.upgrade_legacy(_ctx(), "old")
    second = manager.upgrade_legacy(_ctx(), "old")
    assert first.versions[0].version_id == second.versions[0].version_id
    assert second.total_versions == 1


def test_history_is_latest_first_with_costs():
    manager = _manager()
    file = _file_with_versions(manager, 3)
    history = manager.version_history(_ctx(), file.id)
    assert [v.version_number for v in history.versions] == [3, 2, 1]
    assert history.total_size == 600
    assert history.total_monthly_cost == sum(
        (monthly_cost(StorageClass.STANDARD, s) for s in (100, 200, 300)), Decimal("0")
    )
    assert history.cost_breakdown[StorageClass.STANDARD].count == 3


def test_get_version_includes_file_name():
    manager = _manager()
    file = _file_with_versions(manager, 2)
    detail = manager.get_version(_ctx(), file.id, file.versions[0].version_id)
    assert detail.file_name == "doc.txt"
    assert detail.version_number == 1
    with pytest.raises(FileNotFound):
        manager.get_version(_ctx(), "missing", "v")


def test_statistics_across_files():
    manager = _manager()
    _file_with_versions(manager, 3)
    manager.create_or_new_version(_ctx(), FileIdentity(original_name="b.txt"), _payload(9, size=50))
    stats = manager.version_statistics(_ctx())
    assert stats.total_files == 2
    assert stats.total_versions == 4
    assert stats.average_versions_per_file == 2.0
    assert stats.total_version_size == 650


def test_statistics_empty_tenant():
    stats = _manager().version_statistics(_ctx())
    assert stats.total_files == 0
    assert stats.average_versions_per_file == 0.0


def test_upload_version_recommends_class_and_checksums():
    manager = _manager()
    file = manager.upload_version(_ctx(), FileIdentity(original_name="dump.sql"), b"select 1;", "text/plain")
    version = file.active_version()
    assert version.storage_class is StorageClass.GLACIER_IR
    assert version.checksum is not None and len(version.checksum) == 64
    assert manager.blob_store.read(version.blob_key) == b"select 1;"
    assert version.blob_key.startswith(f"tenants/{TENANT}/files/")


def test_upload_version_releases_blob_when_recording_fails():
    manager = _manager()
    manager.store = mock.MagicMock(wraps=manager.store)
    manager.store.insert.side_effect = FileNotFound("boom")
    with pytest.raises(FileNotFound):
        manager.upload_version(_ctx(), FileIdentity(original_name="a.txt"), b"abc", "text/plain", storage_class="standard")
    assert manager.blob_store._objects == {}


def test_billing_activities_recorded():
    manager = _manager()
    file = _file_with_versions(manager, 2)
    manager.restore_version(_ctx(), file.id, file.versions[0].version_id)
    types = [a.type for a in manager.billing.list_activities(TENANT)]
    assert types == [ActivityType.VERSION_UPLOAD, ActivityType.VERSION_UPLOAD, ActivityType.VERSION_RESTORE]


def test_concurrent_first_uploads_produce_one_file():
    manager = _manager()
    workers = 6
    barrier = threading.Barrier(workers)
    errors = []

    def upload(n):
        barrier.wait()
        try:
            manager.create_or_new_version(_ctx(), IDENTITY, _payload(n))
        except Exception as exc:  # pragma: no cover - surfaced via assertion below
            errors.append(exc)

    threads = [threading.Thread(target=upload, args=(n,)) for n in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    files = manager.store.list_by_tenant(TENANT)
    assert len(files) == 1
    assert sorted(v.version_number for v in files[0].versions) == list(range(1, workers + 1))
    files[0].check_invariants()


def test_first_uploads_through_separate_filesystem_stores_share_one_file(tmp_path):
    # Each manager has its own store instance, so only the on-disk locks are shared.
    managers = [
        VersionLifecycleManager(
            store=FilesystemVersionStore(tmp_path, lock_timeout=5),
            blob_store=InMemoryBlobStore(),
            billing=BillingService(repo=InMemoryBillingRepository()),
        )
        for _ in range(4)
    ]
    barrier = threading.Barrier(len(managers))
    errors = []

    def upload(n):
        barrier.wait()
        try:
            managers[n].create_or_new_version(_ctx(), IDENTITY, _payload(n))
        except Exception as exc:  # pragma: no cover - surfaced via assertion below
            errors.append(exc)

    threads = [threading.Thread(target=upload, args=(n,)) for n in range(len(managers))]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    files = FilesystemVersionStore(tmp_path).list_by_tenant(TENANT)
    assert len(files) == 1
    assert sorted(v.version_number for v in files[0].versions) == [1, 2, 3, 4]
    files[0].check_invariants()


def test_delete_file_releases_blobs_of_versions_added_after_a_stale_read():
    manager = _manager()
    file = manager.create_or_new_version(_ctx(), IDENTITY, _payload(1))
    for n in (1, 2):
        manager.blob_store.put(_payload(n).blob_key, b"x", "STANDARD")
    stale = manager.store.get(TENANT, file.id)
    manager.create_or_new_version(_ctx(), IDENTITY, _payload(2))

    with mock.patch.object(manager.store, "get", return_value=stale):
        released = manager.delete_file(_ctx(), file.id)

    assert released == 2
    assert not manager.blob_store.exists(_payload(2).blob_key)


def test_old_upload_date_is_kept():
    manager = _manager()
    when = datetime.now(timezone.utc) - timedelta(days=40)
    file = manager.create_or_new_version(_ctx(), IDENTITY, _payload(1, upload_date=when))
    assert file.upload_date == when
