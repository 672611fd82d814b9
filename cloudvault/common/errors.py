"""Base exception for cloudvault domain errors.

Each engine subclasses this with a stable machine-readable ``code`` and the
HTTP status the thin route layer should answer with.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class CloudVaultError(RuntimeError):
    code: str = "cloudvault.error"
    status_code: int = 400
    resource_kind: Optional[str] = None

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = details

    def __str__(self) -> str:
        return self.message
