"""Blob Store interface with in-memory and S3 implementations.

Blob calls are made outside any Version Store critical section; each call
takes an optional timeout (seconds) that bounds both connect and read.
"""
from __future__ import annotations

import hashlib
import logging
import threading
from typing import Dict, Optional, Protocol, Tuple, Union

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from cloudvault.config import runtime_config
from cloudvault.blob_store.models import BlobLocator, BlobStoreError, BlobStoreTimeout
from cloudvault.cost_model.models import StorageClass
from cloudvault.cost_model.service import parse_storage_class

logger = logging.getLogger(__name__)

_MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}


class BlobStore(Protocol):
    def put(
        self,
        key: str,
        data: bytes,
        storage_class: Union[str, StorageClass],
        timeout: Optional[float] = None,
    ) -> BlobLocator: ...

    def delete(self, key: str, timeout: Optional[float] = None) -> None: ...

    def transition(
        self, key: str, storage_class: Union[str, StorageClass], timeout: Optional[float] = None
    ) -> None: ...

    def download_url(self, key: str, expires_in: int = 3600) -> str: ...


class InMemoryBlobStore:
    """Dict-backed store for tests and local runs."""

    def __init__(self, bucket_name: Optional[str] = None) -> None:
        self.bucket_name = bucket_name or "test-mem-bucket"
        self._lock = threading.Lock()
        self._objects: Dict[str, Tuple[bytes, StorageClass]] = {}

    def put(
        self,
        key: str,
        data: bytes,
        storage_class: Union[str, StorageClass],
        timeout: Optional[float] = None,
    ) -> BlobLocator:
        sc = parse_storage_class(storage_class)
        with self._lock:
            self._objects[key] = (bytes(data), sc)
        return BlobLocator(
            key=key,
            uri=f"mem://{self.bucket_name}/{key}",
            storage_class=sc,
            size=len(data),
            etag=hashlib.md5(data).hexdigest(),
        )

    def delete(self, key: str, timeout: Optional[float] = None) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def transition(
        self, key: str, storage_class: Union[str, StorageClass], timeout: Optional[float] = None
    ) -> None:
        sc = parse_storage_class(storage_class)
        with self._lock:
            if key not in self._objects:
                raise BlobStoreError(f"blob {key} not found", key=key)
            data, _ = self._objects[key]
            self._objects[key] = (data, sc)

    def download_url(self, key: str, expires_in: int = 3600) -> str:
        return f"mem://{self.bucket_name}/{key}?expires_in={expires_in}"

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def storage_class_of(self, key: str) -> Optional[StorageClass]:
        with self._lock:
            entry = self._objects.get(key)
        return entry[1] if entry else None

    def read(self, key: str) -> bytes:
        with self._lock:
            return self._objects[key][0]


class S3BlobStore:
    """S3-backed blob store.

    Enforces BLOB_STORE_BUCKET at construction time (fail-fast) so a missing
    bucket shows up at startup, not on the first upload.
    """

    def __init__(
        self,
        bucket_name: Optional[str] = None,
        region: Optional[str] = None,
        default_timeout: Optional[float] = None,
    ) -> None:
        self.bucket_name = bucket_name or runtime_config.get_blob_store_bucket()
        if not self.bucket_name:
            raise ValueError(
                "BLOB_STORE_BUCKET config missing. "
                "Set BLOB_STORE_BUCKET env var to the S3 bucket holding file versions."
            )
        self.region = region or runtime_config.get_aws_region()
        self.default_timeout = default_timeout or runtime_config.get_blob_store_timeout()

    def _client(self, timeout: Optional[float]):
        seconds = timeout or self.default_timeout
        config = Config(
            connect_timeout=seconds,
            read_timeout=seconds,
            retries={"max_attempts": 3, "mode": "standard"},
        )
        return boto3.client("s3", region_name=self.region, config=config)

    def _uri(self, key: str) -> str:
        return f"s3://{self.bucket_name}/{key}"

    def put(
        self,
        key: str,
        data: bytes,
        storage_class: Union[str, StorageClass],
        timeout: Optional[float] = None,
    ) -> BlobLocator:
        sc = parse_storage_class(storage_class)
        s3 = self._client(timeout)
        try:
            response = s3.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                StorageClass=sc.value,
                ServerSideEncryption="AES256",
            )
        except (ConnectTimeoutError, ReadTimeoutError) as exc:
            raise BlobStoreTimeout(f"S3 put timed out for {key}", key=key) from exc
        except (ClientError, BotoCoreError) as exc:
            raise BlobStoreError(f"S3 put failed for {key}: {exc}", key=key) from exc
        etag = (response or {}).get("ETag")
        return BlobLocator(
            key=key,
            uri=self._uri(key),
            storage_class=sc,
            size=len(data),
            etag=etag.strip('"') if isinstance(etag, str) else None,
        )

    def delete(self, key: str, timeout: Optional[float] = None) -> None:
        s3 = self._client(timeout)
        try:
            s3.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _MISSING_KEY_CODES:
                logger.debug("Blob %s already absent", key)
                return
            raise BlobStoreError(f"S3 delete failed for {key}: {exc}", key=key) from exc
        except (ConnectTimeoutError, ReadTimeoutError) as exc:
            raise BlobStoreTimeout(f"S3 delete timed out for {key}", key=key) from exc
        except BotoCoreError as exc:
            raise BlobStoreError(f"S3 delete failed for {key}: {exc}", key=key) from exc

    def transition(
        self, key: str, storage_class: Union[str, StorageClass], timeout: Optional[float] = None
    ) -> None:
        """Re-tier an object in place by copying it onto itself."""
        sc = parse_storage_class(storage_class)
        s3 = self._client(timeout)
        try:
            s3.copy_object(
                Bucket=self.bucket_name,
                Key=key,
                CopySource={"Bucket": self.bucket_name, "Key": key},
                StorageClass=sc.value,
                MetadataDirective="COPY",
            )
        except (ConnectTimeoutError, ReadTimeoutError) as exc:
            raise BlobStoreTimeout(f"S3 transition timed out for {key}", key=key) from exc
        except (ClientError, BotoCoreError) as exc:
            raise BlobStoreError(f"S3 transition failed for {key}: {exc}", key=key) from exc

    def download_url(self, key: str, expires_in: int = 3600) -> str:
        """Presigned GET URL for one object version."""
        s3 = self._client(None)
        try:
            return s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as exc:
            raise BlobStoreError(f"S3 presign failed for {key}: {exc}", key=key) from exc
