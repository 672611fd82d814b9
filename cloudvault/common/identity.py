"""Shared identity helpers and FastAPI context builder for tenant-scoped calls."""
from __future__ import annotations

import os
import re
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

from fastapi import Header, HTTPException, Query

VALID_TENANT_PATTERN = re.compile(r"^t_[a-z0-9_-]+$")


def _default_env() -> str:
    env_value = os.getenv("ENV") or os.getenv("APP_ENV")
    return env_value.lower() if env_value else "dev"


def validate_tenant_id(tenant_id: Optional[str]) -> str:
    if not tenant_id:
        raise ValueError("tenant_id is required")
    if not VALID_TENANT_PATTERN.match(tenant_id):
        raise ValueError(f"tenant_id must match pattern ^t_[a-z0-9_-]+$, got: {tenant_id}")
    return tenant_id


@dataclass
class RequestContext:
    tenant_id: str
    env: Optional[str] = None
    user_id: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        validate_tenant_id(self.tenant_id)
        if not self.request_id:
            raise ValueError("request_id is required")
        self.env = (self.env or _default_env()).lower()

    @property
    def actor(self) -> str:
        """Identity recorded as `uploaded_by`; falls back to the tenant."""
        return self.user_id or self.tenant_id


class RequestContextBuilder:
    """Builder for RequestContext from HTTP headers."""

    @classmethod
    def from_headers(cls, headers: Dict[str, str]) -> RequestContext:
        normalized = {key.lower(): value for key, value in headers.items()}
        tenant_id = normalized.get("x-tenant-id")
        if not tenant_id:
            raise ValueError("X-Tenant-Id header is required")
        request_id = normalized.get("x-request-id") or uuid.uuid4().hex
        return RequestContext(
            tenant_id=tenant_id,
            env=normalized.get("x-env"),
            user_id=normalized.get("x-user-id"),
            request_id=request_id,
        )


def get_request_context(
    header_tenant: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
    header_user: Optional[str] = Header(default=None, alias="X-User-Id"),
    header_request_id: Optional[str] = Header(default=None, alias="X-Request-Id"),
    header_env: Optional[str] = Header(default=None, alias="X-Env"),
    query_tenant: Optional[str] = Query(default=None, alias="tenant_id"),
    query_user: Optional[str] = Query(default=None, alias="user_id"),
) -> RequestContext:
    headers: Dict[str, str] = {}
    tenant_id = header_tenant or query_tenant
    user_id = header_user or query_user
    if tenant_id:
        headers["X-Tenant-Id"] = tenant_id
    if user_id:
        headers["X-User-Id"] = user_id
    if header_request_id:
        headers["X-Request-Id"] = header_request_id
    if header_env:
        headers["X-Env"] = header_env
    try:
        return RequestContextBuilder.from_headers(headers)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

