from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import List, Optional, Protocol

from cloudvault.billing.models import BillingActivity
from cloudvault.config import runtime_config


class BillingRepository(Protocol):
    def append(self, activity: BillingActivity) -> BillingActivity: ...
    def list_activities(self, tenant_id: str, limit: int = 200, offset: int = 0) -> List[BillingActivity]: ...


class InMemoryBillingRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: List[BillingActivity] = []

    def append(self, activity: BillingActivity) -> BillingActivity:
        with self._lock:
            self._items.append(activity)
        return activity

    def list_activities(self, tenant_id: str, limit: int = 200, offset: int = 0) -> List[BillingActivity]:
        with self._lock:
            items = [a for a in self._items if a.tenant_id == tenant_id]
        return items[offset : offset + limit]


class FilesystemBillingRepository(BillingRepository):
    """Append-only JSONL ledger, one file per tenant."""

    def __init__(self, root: Optional[str] = None) -> None:
        dir_path = root or runtime_config.get_billing_dir()
        self._root = Path(dir_path or Path(tempfile.gettempdir()) / "cloudvault_billing")
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _file_path(self, tenant_id: str) -> Path:
        return self._root / f"{tenant_id}.jsonl"

    def append(self, activity: BillingActivity) -> BillingActivity:
        path = self._file_path(activity.tenant_id)
        with self._lock, path.open("a", encoding="utf-8") as fh:
            fh.write(activity.model_dump_json() + "\n")
        return activity

    def list_activities(self, tenant_id: str, limit: int = 200, offset: int = 0) -> List[BillingActivity]:
        path = self._file_path(tenant_id)
        if not path.exists():
            return []
        items: List[BillingActivity] = []
        with path.open("r", encoding="utf-8") as fh:
            for raw in fh:
                raw = raw.strip()
                if not raw:
                    continue
                items.append(BillingActivity(**json.loads(raw)))
        return items[offset : offset + limit]


def billing_repo_from_env() -> BillingRepository:
    backend = runtime_config.get_billing_backend()
    if backend == "filesystem":
        return FilesystemBillingRepository(root=runtime_config.get_billing_dir())
    if backend != "memory":
        raise RuntimeError(f"BILLING_BACKEND must be memory or filesystem, got: {backend}")
    return InMemoryBillingRepository()
