"""Version Store backends.

Every change to a file aggregate goes through ``mutate``: a per-key lock
serializes writers inside the process and an etag compare-and-set guards
against writers the lock cannot see (another process on the same
directory, a test poking the backend directly). A lost race is retried on a
fresh read up to ``VERSION_STORE_MAX_ATTEMPTS`` times.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, Protocol, Tuple, Union

from cloudvault.common.identity import validate_tenant_id
from cloudvault.config import runtime_config
from cloudvault.version_store.errors import (
    ConcurrentModificationConflict,
    FileAlreadyExists,
    FileNotFound,
    InvariantViolation,
    StoreTimeout,
)
from cloudvault.version_store.models import UnversionedFile, VersionedFile, parse_stored_file

logger = logging.getLogger(__name__)

StoredFileT = Union[UnversionedFile, VersionedFile]
MutateFn = Callable[[StoredFileT], Optional[StoredFileT]]
# Called with (record reference, error) for each record that cannot be loaded.
UnreadableFn = Callable[[str, Exception], None]

VALID_FILE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class VersionStore(Protocol):
    def get(self, tenant_id: str, file_id: str) -> StoredFileT: ...
    def mutate(self, tenant_id: str, file_id: str, fn: MutateFn) -> StoredFileT: ...
    def insert(self, tenant_id: str, file: StoredFileT) -> StoredFileT: ...
    def find_by_identity(
        self, tenant_id: str, original_name: str, parent_folder_id: Optional[str]
    ) -> Optional[StoredFileT]: ...
    def identity_lock(
        self, tenant_id: str, original_name: str, parent_folder_id: Optional[str]
    ) -> Any: ...
    def list_by_tenant(self, tenant_id: str, on_unreadable: Optional[UnreadableFn] = None) -> List[StoredFileT]: ...
    def list_tenants(self) -> List[str]: ...
    def delete(self, tenant_id: str, file_id: str) -> StoredFileT: ...


class _KeyedLocks:
    """``threading.Lock`` per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, holders + waiters]
        self._locks: Dict[Hashable, List[Any]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable, timeout: float) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=timeout):
                raise StoreTimeout(f"timed out after {timeout}s waiting for {key!r}", key=str(key))
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


class _LockingVersionStore:
    """Shared mutate/insert/delete logic over a small raw read/write surface.

    Backends implement ``_read`` (raw dict plus etag), ``_write`` (a
    compare-and-set where ``expected_etag=None`` means "must not exist"),
    ``_remove`` (returns the removed raw dict), ``_iter_raw`` (reference plus
    undecoded payload) and ``_tenants``.
    """

    def __init__(self, max_attempts: Optional[int] = None, lock_timeout: Optional[float] = None) -> None:
        self._max_attempts = max_attempts or runtime_config.get_version_store_max_attempts()
        self._lock_timeout = lock_timeout if lock_timeout is not None else runtime_config.get_version_store_lock_timeout()
        self._locks = _KeyedLocks()

    # --- backend surface -------------------------------------------------
    def _read(self, tenant_id: str, file_id: str) -> Optional[Tuple[Dict[str, Any], str]]:
        raise NotImplementedError

    def _write(self, tenant_id: str, file_id: str, data: Dict[str, Any], expected_etag: Optional[str]) -> bool:
        raise NotImplementedError

    def _remove(self, tenant_id: str, file_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _iter_raw(self, tenant_id: str) -> Iterator[Tuple[str, Union[str, bytes]]]:
        raise NotImplementedError

    def _tenants(self) -> List[str]:
        raise NotImplementedError

    # --- helpers ---------------------------------------------------------
    @staticmethod
    def _check_ids(tenant_id: str, file_id: Optional[str] = None) -> None:
        validate_tenant_id(tenant_id)
        if file_id is not None and not VALID_FILE_ID.match(file_id):
            raise ValueError(f"file_id must match {VALID_FILE_ID.pattern}, got: {file_id!r}")

    @staticmethod
    def _validate(tenant_id: str, file_id: str, file: StoredFileT) -> None:
        if file.tenant_id != tenant_id or file.id != file_id:
            raise InvariantViolation(
                f"aggregate identity changed during mutation ({file.tenant_id}/{file.id})",
                file_id=file_id,
            )
        if isinstance(file, VersionedFile):
            file.check_invariants()

    @staticmethod
    def _dump(file: StoredFileT) -> Dict[str, Any]:
        return json.loads(file.model_dump_json())

    # --- public API ------------------------------------------------------
    def get(self, tenant_id: str, file_id: str) -> StoredFileT:
        self._check_ids(tenant_id, file_id)
        found = self._read(tenant_id, file_id)
        if found is None:
            raise FileNotFound(f"file {file_id} not found", file_id=file_id)
        return parse_stored_file(found[0], tenant_id=tenant_id)

    def mutate(self, tenant_id: str, file_id: str, fn: MutateFn) -> StoredFileT:
        """Apply ``fn`` to a private copy and persist the result atomically.

        ``fn`` may modify the copy in place and return ``None``, or return a
        replacement aggregate (an upgraded file, for instance). Any exception
        it raises aborts the mutation with nothing written.
        """
        self._check_ids(tenant_id, file_id)
        with self._locks.hold(("file", tenant_id, file_id), self._lock_timeout):
            for attempt in range(1, self._max_attempts + 1):
                found = self._read(tenant_id, file_id)
                if found is None:
                    raise FileNotFound(f"file {file_id} not found", file_id=file_id)
                raw, etag = found
                current = parse_stored_file(raw, tenant_id=tenant_id)
                result = fn(current)
                updated = current if result is None else result
                self._validate(tenant_id, file_id, updated)
                if self._write(tenant_id, file_id, self._dump(updated), expected_etag=etag):
                    return updated
                logger.info(
                    "Concurrent write on %s/%s (attempt %s/%s), retrying",
                    tenant_id, file_id, attempt, self._max_attempts,
                )
        raise ConcurrentModificationConflict(
            f"file {file_id} kept changing underneath {self._max_attempts} attempts",
            file_id=file_id,
            attempts=self._max_attempts,
        )

    def insert(self, tenant_id: str, file: StoredFileT) -> StoredFileT:
        self._check_ids(tenant_id, file.id)
        self._validate(tenant_id, file.id, file)
        with self._locks.hold(("file", tenant_id, file.id), self._lock_timeout):
            if not self._write(tenant_id, file.id, self._dump(file), expected_etag=None):
                raise FileAlreadyExists(f"file {file.id} already exists", file_id=file.id)
        return file

    def find_by_identity(
        self, tenant_id: str, original_name: str, parent_folder_id: Optional[str]
    ) -> Optional[StoredFileT]:
        for file in self.list_by_tenant(tenant_id):
            if file.original_name == original_name and file.parent_folder_id == parent_folder_id:
                return file
        return None

    @contextmanager
    def identity_lock(
        self, tenant_id: str, original_name: str, parent_folder_id: Optional[str]
    ) -> Iterator[None]:
        """Serialize "is there already a file with this name here?" decisions."""
        with self._locks.hold(("identity", tenant_id, original_name, parent_folder_id), self._lock_timeout):
            yield

    def list_by_tenant(self, tenant_id: str, on_unreadable: Optional[UnreadableFn] = None) -> List[StoredFileT]:
        """Every loadable file of a tenant.

        A record that is not valid JSON or not a valid file is skipped and
        handed to ``on_unreadable`` (logged when no callback is given).
        """
        self._check_ids(tenant_id)
        files: List[StoredFileT] = []
        for ref, payload in self._iter_raw(tenant_id):
            try:
                files.append(parse_stored_file(json.loads(payload), tenant_id=tenant_id))
            except ValueError as exc:
                if on_unreadable is None:
                    logger.warning("Skipping unreadable record %s/%s: %s", tenant_id, ref, exc)
                else:
                    on_unreadable(ref, exc)
        return files

    def list_tenants(self) -> List[str]:
        return sorted(self._tenants())

    def delete(self, tenant_id: str, file_id: str) -> StoredFileT:
        """Remove a file and return the aggregate exactly as it was removed."""
        self._check_ids(tenant_id, file_id)
        with self._locks.hold(("file", tenant_id, file_id), self._lock_timeout):
            raw = self._remove(tenant_id, file_id)
        if raw is None:
            raise FileNotFound(f"file {file_id} not found", file_id=file_id)
        return parse_stored_file(raw, tenant_id=tenant_id)


class InMemoryVersionStore(_LockingVersionStore):
    """Keeps serialized documents so callers never share live objects."""

    def __init__(self, max_attempts: Optional[int] = None, lock_timeout: Optional[float] = None) -> None:
        super().__init__(max_attempts=max_attempts, lock_timeout=lock_timeout)
        self._guard = threading.Lock()
        self._docs: Dict[Tuple[str, str], Tuple[str, int]] = {}

    def _read(self, tenant_id: str, file_id: str) -> Optional[Tuple[Dict[str, Any], str]]:
        with self._guard:
            doc = self._docs.get((tenant_id, file_id))
        if doc is None:
            return None
        payload, revision = doc
        return json.loads(payload), str(revision)

    def _write(self, tenant_id: str, file_id: str, data: Dict[str, Any], expected_etag: Optional[str]) -> bool:
        key = (tenant_id, file_id)
        with self._guard:
            doc = self._docs.get(key)
            current_etag = str(doc[1]) if doc else None
            if current_etag != expected_etag:
                return False
            revision = doc[1] + 1 if doc else 1
            self._docs[key] = (json.dumps(data), revision)
            return True

    def _remove(self, tenant_id: str, file_id: str) -> Optional[Dict[str, Any]]:
        with self._guard:
            doc = self._docs.pop((tenant_id, file_id), None)
        return json.loads(doc[0]) if doc else None

    def _iter_raw(self, tenant_id: str) -> Iterator[Tuple[str, Union[str, bytes]]]:
        with self._guard:
            docs = [(file_id, payload) for (tenant, file_id), (payload, _) in self._docs.items() if tenant == tenant_id]
        yield from docs

    def _tenants(self) -> List[str]:
        with self._guard:
            return list({tenant for tenant, _ in self._docs})


class FilesystemVersionStore(_LockingVersionStore):
    """One JSON document per file.

    Layout: ``<root>/<tenant_id>/files/<file_id>.json``. Writes go to a temp
    file in the same directory and are swapped in with ``os.replace``; the
    etag is the sha256 of the document bytes. A ``.lock`` file created with
    ``O_EXCL`` makes the compare-and-set exclusive across processes, and
    ``<root>/<tenant_id>/identities/<sha256>.lock`` does the same for
    first-upload decisions. A lock file older than ``stale_lock_after``
    seconds is assumed to belong to a crashed writer and is broken.
    """

    _poll_interval = 0.01

    def __init__(
        self,
        root: Optional[Union[str, Path]] = None,
        max_attempts: Optional[int] = None,
        lock_timeout: Optional[float] = None,
        stale_lock_after: Optional[float] = None,
    ) -> None:
        super().__init__(max_attempts=max_attempts, lock_timeout=lock_timeout)
        dir_path = root or runtime_config.get_version_store_dir()
        self._root = Path(dir_path or Path(tempfile.gettempdir()) / "cloudvault_versions")
        self._root.mkdir(parents=True, exist_ok=True)
        self._stale_lock_after = (
            stale_lock_after if stale_lock_after is not None else runtime_config.get_version_store_stale_lock_seconds()
        )

    @property
    def root(self) -> Path:
        return self._root

    def _files_dir(self, tenant_id: str) -> Path:
        return self._root / tenant_id / "files"

    def _path(self, tenant_id: str, file_id: str) -> Path:
        return self._files_dir(tenant_id) / f"{file_id}.json"

    def _identity_path(self, tenant_id: str, original_name: str, parent_folder_id: Optional[str]) -> Path:
        digest = hashlib.sha256(json.dumps([original_name, parent_folder_id]).encode("utf-8")).hexdigest()
        return self._root / tenant_id / "identities" / f"{digest}.id"

    @staticmethod
    def _etag(payload: bytes) -> str:
        return hashlib.sha256(payload).hexdigest()

    def _break_if_stale(self, lock_path: Path) -> bool:
        try:
            age = time.time() - lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age < self._stale_lock_after:
            return False
        try:
            holder = lock_path.read_text(encoding="utf-8").strip() or "unknown"
            lock_path.unlink()
        except FileNotFoundError:
            return True
        logger.warning("Broke stale lock %s (held by pid %s for %.0fs)", lock_path, holder, age)
        return True

    @contextmanager
    def _file_lock(self, path: Path) -> Iterator[None]:
        lock_path = path.with_suffix(".lock")
        deadline = time.monotonic() + self._lock_timeout
        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                break
            except FileExistsError:
                if self._break_if_stale(lock_path):
                    continue
                if time.monotonic() >= deadline:
                    raise StoreTimeout(f"timed out waiting for {lock_path}", path=str(lock_path)) from None
                time.sleep(self._poll_interval)
        try:
            os.write(fd, str(os.getpid()).encode("ascii"))
            os.close(fd)
            yield
        finally:
            try:
                os.unlink(lock_path)
            except FileNotFoundError:
                logger.warning("Lock file %s vanished before release", lock_path)

    @contextmanager
    def identity_lock(
        self, tenant_id: str, original_name: str, parent_folder_id: Optional[str]
    ) -> Iterator[None]:
        """In-process lock plus a lock file, so other processes on this root wait too."""
        self._check_ids(tenant_id)
        marker = self._identity_path(tenant_id, original_name, parent_folder_id)
        marker.parent.mkdir(parents=True, exist_ok=True)
        with super().identity_lock(tenant_id, original_name, parent_folder_id):
            with self._file_lock(marker):
                yield

    def _current_etag(self, path: Path) -> Optional[str]:
        if not path.exists():
            return None
        return self._etag(path.read_bytes())

    def _read(self, tenant_id: str, file_id: str) -> Optional[Tuple[Dict[str, Any], str]]:
        path = self._path(tenant_id, file_id)
        try:
            payload = path.read_bytes()
        except FileNotFoundError:
            return None
        return json.loads(payload), self._etag(payload)

    def _write(self, tenant_id: str, file_id: str, data: Dict[str, Any], expected_etag: Optional[str]) -> bool:
        path = self._path(tenant_id, file_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(data, indent=2, sort_keys=True).encode("utf-8")
        with self._file_lock(path):
            if self._current_etag(path) != expected_etag:
                return False
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{file_id}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        return True

    def _remove(self, tenant_id: str, file_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(tenant_id, file_id)
        if not path.parent.exists():
            return None
        # Read under the same lock writers take, so the returned document is the removed one.
        with self._file_lock(path):
            try:
                payload = path.read_bytes()
            except FileNotFoundError:
                return None
            path.unlink()
        return json.loads(payload)

    def _iter_raw(self, tenant_id: str) -> Iterator[Tuple[str, Union[str, bytes]]]:
        files_dir = self._files_dir(tenant_id)
        if not files_dir.exists():
            return
        for path in sorted(files_dir.glob("*.json")):
            try:
                payload = path.read_bytes()
            except FileNotFoundError:
                # Deleted between listing and reading.
                continue
            yield path.stem, payload

    def _tenants(self) -> List[str]:
        return [p.name for p in self._root.iterdir() if p.is_dir() and (p / "files").is_dir()]
