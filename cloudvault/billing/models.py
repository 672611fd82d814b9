from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict
from uuid import uuid4

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ActivityType(str, Enum):
    VERSION_UPLOAD = "version_upload"
    VERSION_RESTORE = "version_restore"
    VERSION_DELETE = "version_delete"
    VERSION_DOWNLOAD = "version_download"
    VERSION_CLEANUP = "version_cleanup"
    STORAGE_OPTIMIZATION = "storage_optimization"


class BillingActivity(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    tenant_id: str
    type: ActivityType
    timestamp: datetime = Field(default_factory=_now)
    details: Dict[str, Any] = Field(default_factory=dict)
    cost: Decimal = Decimal("0")
