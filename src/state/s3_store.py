from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .blob_store import BlobInfo, BlobStoreError


_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")
# 412 when the key exists; 409 when a concurrent conditional write to the same
# key is in flight. Both mean this writer did not create the object.
_CONDITION_FAILED_CODES = ("PreconditionFailed", "412", "ConditionalRequestConflict", "409")


def _error_code(e: ClientError) -> Optional[str]:
    return e.response.get("Error", {}).get("Code")


@dataclass
class S3Location:
    bucket: str
    prefix: str = ""

    def key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def strip(self, key: str) -> str:
        return key[len(self.prefix):] if self.prefix and key.startswith(self.prefix) else key


class S3BlobStore:
    """
    S3-backed blob store for state and lock objects.

    Usage
    - Provide a bucket and optionally a key prefix (e.g. "terraform/"); all keys
      handed in by the engine are placed under that prefix and listings return
      keys relative to it.
    - `get()` returns None when the object does not exist.
    - `put_if_absent()` uses S3 conditional writes (`If-None-Match: *`), so lock
      acquisition against S3 is atomic.
    - `list()` follows continuation tokens and returns every matching object.

    Any other S3 or transport failure is raised as BlobStoreError with the
    original botocore exception chained.
    """

    supports_put_if_absent = True

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        prefix: str = "",
        region_name: Optional[str] = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket is required")
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._loc = S3Location(bucket=bucket, prefix=prefix)

    @property
    def bucket(self) -> str:
        return self._loc.bucket

    def get(self, key: str) -> Optional[bytes]:
        try:
            resp = self._s3.get_object(Bucket=self._loc.bucket, Key=self._loc.key(key))
            return resp["Body"].read()
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return None
            raise BlobStoreError(f"GetObject failed for {self._uri(key)}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"GetObject failed for {self._uri(key)}") from e

    def put(self, key: str, data: bytes) -> None:
        try:
            self._s3.put_object(
                Bucket=self._loc.bucket,
                Key=self._loc.key(key),
                Body=data,
                ContentType="application/octet-stream",
            )
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"PutObject failed for {self._uri(key)}") from e

    def put_if_absent(self, key: str, data: bytes) -> bool:
        """Create the object only if no object exists at `key`.

        Returns True when this call created it, False when the key was taken.
        """
        try:
            self._s3.put_object(
                Bucket=self._loc.bucket,
                Key=self._loc.key(key),
                Body=data,
                ContentType="application/octet-stream",
                IfNoneMatch="*",
            )
        except ClientError as e:
            if _error_code(e) in _CONDITION_FAILED_CODES:
                return False
            raise BlobStoreError(f"Conditional PutObject failed for {self._uri(key)}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"Conditional PutObject failed for {self._uri(key)}") from e
        return True

    def delete(self, key: str) -> None:
        # S3 DeleteObject succeeds for missing keys
        try:
            self._s3.delete_object(Bucket=self._loc.bucket, Key=self._loc.key(key))
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"DeleteObject failed for {self._uri(key)}") from e

    def list(self, prefix: str) -> List[BlobInfo]:
        out: List[BlobInfo] = []
        try:
            paginator = self._s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._loc.bucket, Prefix=self._loc.key(prefix)):
                for obj in page.get("Contents", []) or []:
                    out.append(
                        BlobInfo(
                            key=self._loc.strip(obj["Key"]),
                            size=int(obj.get("Size", 0)),
                            uploaded=obj["LastModified"],
                        )
                    )
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"ListObjectsV2 failed for {self._uri(prefix)}") from e
        return out

    def _uri(self, key: str) -> str:
        return f"s3://{self._loc.bucket}/{self._loc.key(key)}"


__all__ = ["S3BlobStore", "S3Location"]
