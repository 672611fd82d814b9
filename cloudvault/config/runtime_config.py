"""Runtime configuration helpers for cloudvault engines."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_GLACIER_EXTENSIONS = ".zip,.rar,.tar,.gz,.7z,.bz2"
DEFAULT_GLACIER_IR_EXTENSIONS = ".bak,.backup,.sql,.dump"
DEFAULT_STANDARD_EXTENSIONS = ".jpg,.jpeg,.png,.gif,.mp4,.avi,.pdf,.doc,.docx"


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(name, default)


def _get_int(name: str, default: int) -> int:
    raw = _get_env(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got: {raw!r}") from exc


def _get_float(name: str, default: float) -> float:
    raw = _get_env(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got: {raw!r}") from exc


def _split_extensions(raw: str) -> Tuple[str, ...]:
    # ".ZIP, tar" -> ("zip", "tar")
    return tuple(part.strip().lower().lstrip(".") for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class StorageSettings:
    large_file_threshold_mb: int = 100
    archive_extensions: Tuple[str, ...] = _split_extensions(DEFAULT_GLACIER_EXTENSIONS)
    backup_extensions: Tuple[str, ...] = _split_extensions(DEFAULT_GLACIER_IR_EXTENSIONS)
    frequent_extensions: Tuple[str, ...] = _split_extensions(DEFAULT_STANDARD_EXTENSIONS)
    default_storage_class: str = "STANDARD"


def storage_settings() -> StorageSettings:
    """Recommendation thresholds and extension sets, read fresh from the environment."""
    return StorageSettings(
        large_file_threshold_mb=_get_int("RECOMMEND_STANDARD_IA_THRESHOLD_MB", 100),
        archive_extensions=_split_extensions(_get_env("RECOMMEND_GLACIER_EXTENSIONS") or DEFAULT_GLACIER_EXTENSIONS),
        backup_extensions=_split_extensions(_get_env("RECOMMEND_GLACIER_IR_EXTENSIONS") or DEFAULT_GLACIER_IR_EXTENSIONS),
        frequent_extensions=_split_extensions(_get_env("RECOMMEND_STANDARD_EXTENSIONS") or DEFAULT_STANDARD_EXTENSIONS),
        default_storage_class=(_get_env("DEFAULT_STORAGE_CLASS") or "STANDARD").upper(),
    )


def get_version_store_backend() -> str:
    return (_get_env("VERSION_STORE_BACKEND") or "memory").lower()


def get_version_store_dir() -> Optional[str]:
    return _get_env("VERSION_STORE_FS_DIR")


def get_version_store_max_attempts() -> int:
    return max(1, _get_int("VERSION_STORE_MAX_ATTEMPTS", 5))


def get_version_store_lock_timeout() -> float:
    return _get_float("VERSION_STORE_LOCK_TIMEOUT_SECONDS", 10.0)


def get_version_store_stale_lock_seconds() -> float:
    return _get_float("VERSION_STORE_STALE_LOCK_SECONDS", 60.0)


def get_blob_store_backend() -> str:
    return (_get_env("BLOB_STORE_BACKEND") or "memory").lower()


def get_blob_store_bucket() -> Optional[str]:
    return _get_env("BLOB_STORE_BUCKET")


def get_blob_store_timeout() -> float:
    return _get_float("BLOB_STORE_TIMEOUT_SECONDS", 30.0)


def get_aws_region() -> str:
    return _get_env("AWS_REGION") or _get_env("AWS_DEFAULT_REGION") or "us-east-1"


def get_billing_backend() -> str:
    return (_get_env("BILLING_BACKEND") or "memory").lower()


def get_billing_dir() -> Optional[str]:
    return _get_env("BILLING_BACKEND_FS_DIR")
