"""File aggregate models.

A stored file is always one of two explicit shapes:

* ``UnversionedFile`` - a legacy record with only flat "current" fields.
* ``VersionedFile`` - the aggregate root with its ordered version list.

``upgrade_to_versioned`` is the single, total conversion between them, and
``parse_stored_file`` is the only place that inspects raw persisted dicts to
decide which shape they are.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from cloudvault.cost_model.models import StorageClass
from cloudvault.version_store.errors import InvariantViolation

INITIAL_VERSION_COMMENT = "Initial version"
LEGACY_CONVERSION_COMMENT = "Initial version (converted from legacy)"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


def _as_utc(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _upper(value: Any) -> Any:
    return value.strip().upper() if isinstance(value, str) else value


class FileIdentity(BaseModel):
    """The pair that decides whether an upload is a new file or a new version."""

    original_name: str
    parent_folder_id: Optional[str] = None


class FileVersion(BaseModel):
    version_id: str = Field(default_factory=_uuid)
    version_number: int = Field(..., ge=1)
    blob_key: str
    file_size: int = Field(..., ge=0)
    storage_class: StorageClass = StorageClass.STANDARD
    upload_date: datetime = Field(default_factory=_now)
    uploaded_by: str
    comment: str = ""
    is_active: bool = False
    checksum: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("upload_date")
    @classmethod
    def normalize_upload_date(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("storage_class", mode="before")
    @classmethod
    def normalize_storage_class(cls, value: Any) -> Any:
        return _upper(value)

    def age_days(self, now: Optional[datetime] = None) -> float:
        reference = now or _now()
        return (reference - self.upload_date).total_seconds() / 86400


class VersionPayload(BaseModel):
    """Content description of one upload, as handed to the lifecycle manager."""

    blob_key: str
    file_size: int = Field(..., ge=0)
    storage_class: StorageClass = StorageClass.STANDARD
    comment: Optional[str] = None
    checksum: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    mime_type: Optional[str] = None
    upload_date: datetime = Field(default_factory=_now)

    @field_validator("upload_date")
    @classmethod
    def normalize_upload_date(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("storage_class", mode="before")
    @classmethod
    def normalize_storage_class(cls, value: Any) -> Any:
        return _upper(value)


class _FileBase(BaseModel):
    id: str = Field(default_factory=_uuid)
    tenant_id: str
    original_name: str
    parent_folder_id: Optional[str] = None
    mime_type: Optional[str] = None
    # Mirrored "current" fields.
    blob_key: str
    file_size: int = Field(0, ge=0)
    storage_class: StorageClass = StorageClass.STANDARD
    upload_date: datetime = Field(default_factory=_now)
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("upload_date")
    @classmethod
    def normalize_upload_date(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("storage_class", mode="before")
    @classmethod
    def normalize_storage_class(cls, value: Any) -> Any:
        return _upper(value)

    @property
    def identity(self) -> FileIdentity:
        return FileIdentity(original_name=self.original_name, parent_folder_id=self.parent_folder_id)

    def matches(self, identity: FileIdentity) -> bool:
        return self.original_name == identity.original_name and self.parent_folder_id == identity.parent_folder_id


class UnversionedFile(_FileBase):
    kind: Literal["unversioned"] = "unversioned"


class VersionedFile(_FileBase):
    kind: Literal["versioned"] = "versioned"
    current_version_number: int = Field(1, ge=1)
    total_versions: int = 1
    versioning_enabled: bool = True
    versions: List[FileVersion] = Field(default_factory=list)

    def find_version(self, version_id: str) -> Optional[FileVersion]:
        for version in self.versions:
            if version.version_id == version_id:
                return version
        return None

    def active_version(self) -> FileVersion:
        active = [v for v in self.versions if v.is_active]
        if len(active) != 1:
            raise InvariantViolation(
                f"file {self.id} has {len(active)} active versions", file_id=self.id
            )
        return active[0]

    def next_version_number(self) -> int:
        return max((v.version_number for v in self.versions), default=0) + 1

    def activate(self, version: FileVersion) -> None:
        """Make ``version`` the only active one and resync the mirrored fields."""
        for v in self.versions:
            v.is_active = v.version_id == version.version_id
        self.sync_mirror()

    def sync_mirror(self) -> None:
        active = self.active_version()
        self.current_version_number = active.version_number
        self.total_versions = len(self.versions)
        self.blob_key = active.blob_key
        self.file_size = active.file_size
        self.storage_class = active.storage_class
        self.upload_date = active.upload_date

    def check_invariants(self) -> None:
        if not self.versions:
            raise InvariantViolation(f"file {self.id} has no versions", file_id=self.id)
        active = self.active_version()
        if self.current_version_number != active.version_number:
            raise InvariantViolation(
                f"file {self.id} points at version {self.current_version_number} "
                f"but version {active.version_number} is active",
                file_id=self.id,
            )
        if self.total_versions != len(self.versions):
            raise InvariantViolation(f"file {self.id} total_versions out of sync", file_id=self.id)
        numbers = [v.version_number for v in self.versions]
        if len(set(numbers)) != len(numbers):
            raise InvariantViolation(f"file {self.id} has duplicate version numbers", file_id=self.id)
        mirrored = (self.blob_key, self.file_size, self.storage_class, self.upload_date)
        expected = (active.blob_key, active.file_size, active.storage_class, active.upload_date)
        if mirrored != expected:
            raise InvariantViolation(f"file {self.id} mirrored fields differ from active version", file_id=self.id)


StoredFile = Annotated[Union[UnversionedFile, VersionedFile], Field(discriminator="kind")]

_stored_file_adapter: TypeAdapter = TypeAdapter(StoredFile)

# camelCase keys written by the legacy JSON-file backend.
_LEGACY_KEYS = {
    "originalName": "original_name",
    "parentFolderId": "parent_folder_id",
    "fileType": "mime_type",
    "mimeType": "mime_type",
    "s3Key": "blob_key",
    "fileSize": "file_size",
    "storageClass": "storage_class",
    "uploadDate": "upload_date",
    "currentVersion": "current_version_number",
    "totalVersions": "total_versions",
    "versioningEnabled": "versioning_enabled",
}

_LEGACY_VERSION_KEYS = {
    "versionId": "version_id",
    "versionNumber": "version_number",
    "s3Key": "blob_key",
    "fileSize": "file_size",
    "storageClass": "storage_class",
    "uploadDate": "upload_date",
    "uploadedBy": "uploaded_by",
    "isActive": "is_active",
}

_VERSIONED_ONLY = ("versions", "current_version_number", "total_versions", "versioning_enabled")


def _rename(record: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    renamed = dict(record)
    for legacy, field_name in mapping.items():
        if legacy in renamed:
            value = renamed.pop(legacy)
            renamed.setdefault(field_name, value)
    return renamed


def parse_stored_file(data: Dict[str, Any], tenant_id: Optional[str] = None) -> Union[UnversionedFile, VersionedFile]:
    """Validate a persisted record, tagging untagged legacy records by shape.

    A legacy record counts as versioned only when it carries both a version
    list and a current-version pointer; anything else is unversioned and
    keeps its flat fields.
    """
    record = dict(data)
    if "kind" not in record:
        record = _rename(record, _LEGACY_KEYS)
        if tenant_id:
            record["tenant_id"] = tenant_id
        record = {k: v for k, v in record.items() if v is not None or k == "parent_folder_id"}
        versioned = bool(record.get("versions")) and bool(record.get("current_version_number"))
        if versioned:
            record["versions"] = [
                {k: v for k, v in _rename(version, _LEGACY_VERSION_KEYS).items() if v is not None or k == "checksum"}
                for version in record["versions"]
            ]
            record.setdefault("total_versions", len(record["versions"]))
        else:
            for key in _VERSIONED_ONLY:
                record.pop(key, None)
        known = set(VersionedFile.model_fields)
        extra = {k: record.pop(k) for k in list(record) if k not in known}
        if extra:
            record["extra"] = {**record.get("extra", {}), **extra}
        record["kind"] = "versioned" if versioned else "unversioned"
    return _stored_file_adapter.validate_python(record)


def upgrade_to_versioned(
    stored: Union[UnversionedFile, VersionedFile],
    uploaded_by: str,
    comment: str = LEGACY_CONVERSION_COMMENT,
) -> VersionedFile:
    """Total conversion to the versioned shape; a no-op for versioned files."""
    if isinstance(stored, VersionedFile):
        return stored
    version = FileVersion(
        version_number=1,
        blob_key=stored.blob_key,
        file_size=stored.file_size,
        storage_class=stored.storage_class,
        upload_date=stored.upload_date,
        uploaded_by=uploaded_by,
        comment=comment,
        is_active=True,
    )
    base = stored.model_dump(exclude={"kind"})
    upgraded = VersionedFile(**base, versions=[version])
    upgraded.sync_mirror()
    return upgraded
