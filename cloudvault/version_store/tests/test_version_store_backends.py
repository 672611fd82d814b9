from __future__ import annotations

import os
import threading
import time

import pytest

from cloudvault.version_store.errors import (
    ConcurrentModificationConflict,
    FileAlreadyExists,
    FileNotFound,
    InvariantViolation,
    StoreTimeout,
)
from cloudvault.version_store.models import FileVersion, UnversionedFile, upgrade_to_versioned
from cloudvault.version_store.repository import FilesystemVersionStore, InMemoryVersionStore

TENANT = "t_store"


def _file(file_id: str = "f1", name: str = "a.txt", folder=None):
    legacy = UnversionedFile(
        id=file_id,
        tenant_id=TENANT,
        original_name=name,
        parent_folder_id=folder,
        blob_key=f"tenants/{TENANT}/files/{file_id}/{name}",
        file_size=100,
    )
    return upgrade_to_versioned(legacy, uploaded_by="u")


def _append_version(file):
    number = file.next_version_number()
    version = FileVersion(version_number=number, blob_key=f"k{number}", file_size=number, uploaded_by="u")
    file.versions.append(version)
    file.activate(version)


@pytest.fixture(params=["memory", "filesystem"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryVersionStore(max_attempts=3, lock_timeout=2)
    return FilesystemVersionStore(tmp_path / "store", max_attempts=3, lock_timeout=2)


def test_insert_get_and_duplicate(store):
    store.insert(TENANT, _file())
    loaded = store.get(TENANT, "f1")
    assert loaded.original_name == "a.txt"
    with pytest.raises(FileAlreadyExists):
        store.insert(TENANT, _file())


def test_get_missing_raises(store):
    with pytest.raises(FileNotFound):
        store.get(TENANT, "missing")


def test_get_returns_private_copies(store):
    store.insert(TENANT, _file())
    first = store.get(TENANT, "f1")
    first.original_name = "changed"
    assert store.get(TENANT, "f1").original_name == "a.txt"


def test_mutate_persists_in_place_changes(store):
    store.insert(TENANT, _file())
    updated = store.mutate(TENANT, "f1", _append_version)
    assert updated.total_versions == 2
    assert store.get(TENANT, "f1").current_version_number == 2


def test_mutate_aborts_on_domain_error(store):
    store.insert(TENANT, _file())

    def boom(file):
        _append_version(file)
        raise FileNotFound("nope")

    with pytest.raises(FileNotFound):
        store.mutate(TENANT, "f1", boom)
    assert store.get(TENANT, "f1").total_versions == 1


def test_mutate_refuses_invariant_breaking_result(store):
    store.insert(TENANT, _file())

    def break_pointer(file):
        file.current_version_number = 9

    with pytest.raises(InvariantViolation):
        store.mutate(TENANT, "f1", break_pointer)
    assert store.get(TENANT, "f1").current_version_number == 1


def test_list_by_identity_and_tenants(store):
    store.insert(TENANT, _file("f1", "a.txt"))
    store.insert(TENANT, _file("f2", "a.txt", folder="d1"))
    assert {f.id for f in store.list_by_tenant(TENANT)} == {"f1", "f2"}
    assert store.find_by_identity(TENANT, "a.txt", "d1").id == "f2"
    assert store.find_by_identity(TENANT, "a.txt", None).id == "f1"
    assert store.find_by_identity(TENANT, "b.txt", None) is None
    assert store.list_tenants() == [TENANT]
    assert store.list_by_tenant("t_other") == []


def test_delete_returns_removed_aggregate(store):
    store.insert(TENANT, _file())
    store.mutate(TENANT, "f1", _append_version)
    removed = store.delete(TENANT, "f1")
    assert [v.version_number for v in removed.versions] == [1, 2]
    with pytest.raises(FileNotFound):
        store.delete(TENANT, "f1")


def test_rejects_unsafe_ids(store):
    with pytest.raises(ValueError):
        store.get(TENANT, "../escape")
    with pytest.raises(ValueError):
        store.get("Not-A-Tenant", "f1")


def test_concurrent_appends_lose_nothing(store):
    store.insert(TENANT, _file())
    workers = 8
    barrier = threading.Barrier(workers)
    errors = []

    def worker():
        barrier.wait()
        try:
            store.mutate(TENANT, "f1", _append_version)
        except Exception as exc:  # pragma: no cover - surfaced via assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    final = store.get(TENANT, "f1")
    assert final.total_versions == workers + 1
    assert sorted(v.version_number for v in final.versions) == list(range(1, workers + 2))
    final.check_invariants()


def test_external_writer_triggers_retry():
    store = InMemoryVersionStore(max_attempts=3, lock_timeout=1)
    store.insert(TENANT, _file())
    calls = []

    def racing(file):
        calls.append(1)
        if len(calls) == 1:
            # Simulate a writer that bypasses the in-process lock.
            raw, etag = store._read(TENANT, "f1")
            raw["extra"] = {"touched": True}
            assert store._write(TENANT, "f1", raw, expected_etag=etag)
        _append_version(file)

    updated = store.mutate(TENANT, "f1", racing)
    assert len(calls) == 2
    assert updated.extra == {"touched": True}
    assert store.get(TENANT, "f1").total_versions == 2


def test_conflict_surfaces_after_max_attempts():
    store = InMemoryVersionStore(max_attempts=2, lock_timeout=1)
    store.insert(TENANT, _file())

    def always_racing(file):
        raw, etag = store._read(TENANT, "f1")
        assert store._write(TENANT, "f1", raw, expected_etag=etag)

    with pytest.raises(ConcurrentModificationConflict):
        store.mutate(TENANT, "f1", always_racing)


def test_lock_timeout_raises_store_timeout():
    store = InMemoryVersionStore(lock_timeout=0.05)
    store.insert(TENANT, _file())
    held = threading.Event()
    release = threading.Event()

    def slow(file):
        held.set()
        release.wait(2)

    t = threading.Thread(target=lambda: store.mutate(TENANT, "f1", slow))
    t.start()
    held.wait(2)
    try:
        with pytest.raises(StoreTimeout):
            store.mutate(TENANT, "f1", _append_version)
    finally:
        release.set()
        t.join()
    assert store.get(TENANT, "f1").total_versions == 1


def test_filesystem_layout_and_held_lock_timeout(tmp_path):
    store = FilesystemVersionStore(tmp_path, lock_timeout=0.05)
    store.insert(TENANT, _file())
    path = tmp_path / TENANT / "files" / "f1.json"
    assert path.exists()
    # A fresh lock file belongs to a live writer.
    path.with_suffix(".lock").write_text("12345")
    with pytest.raises(StoreTimeout):
        store.mutate(TENANT, "f1", _append_version)
    assert store.get(TENANT, "f1").total_versions == 1


def test_filesystem_breaks_stale_lock(tmp_path):
    store = FilesystemVersionStore(tmp_path, lock_timeout=0.5, stale_lock_after=30)
    store.insert(TENANT, _file())
    lock = tmp_path / TENANT / "files" / "f1.lock"
    lock.write_text("99999")
    old = time.time() - 120
    os.utime(lock, (old, old))

    store.mutate(TENANT, "f1", _append_version)

    assert store.get(TENANT, "f1").total_versions == 2
    assert not lock.exists()


def test_locks_are_released_once_idle(store):
    for n in range(50):
        store.insert(TENANT, _file(f"f{n}", f"n{n}.txt"))
        with store.identity_lock(TENANT, f"n{n}.txt", None):
            store.mutate(TENANT, f"f{n}", _append_version)
    for n in range(50):
        store.delete(TENANT, f"f{n}")
    assert len(store._locks) == 0


def test_schema_invalid_record_is_skipped(store):
    store.insert(TENANT, _file("f1"))
    assert store._write(TENANT, "bad", {"kind": "versioned", "tenant_id": TENANT}, expected_etag=None)
    seen = []

    files = store.list_by_tenant(TENANT, on_unreadable=lambda ref, exc: seen.append(ref))

    assert [f.id for f in files] == ["f1"]
    assert seen == ["bad"]
    assert store.find_by_identity(TENANT, "a.txt", None).id == "f1"


def test_corrupt_json_is_skipped(tmp_path):
    store = FilesystemVersionStore(tmp_path)
    store.insert(TENANT, _file("f1"))
    (tmp_path / TENANT / "files" / "broken.json").write_text("{not json")
    seen = []
    files = store.list_by_tenant(TENANT, on_unreadable=lambda ref, exc: seen.append((ref, type(exc))))
    assert [f.id for f in files] == ["f1"]
    assert seen[0][0] == "broken"
    assert issubclass(seen[0][1], ValueError)
