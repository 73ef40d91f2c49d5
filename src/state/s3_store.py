from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from .models import Record


logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Persistence failure while loading or saving the record."""


class OptimisticLockError(StoreError):
    """The stored record changed since it was read; the write was not applied."""


def _to_fernet(key: str | bytes) -> Fernet:
    if isinstance(key, str):
        key = key.encode("utf-8")
    return Fernet(key)


def _encode(record: Record) -> bytes:
    # sorted keys, compact separators
    return json.dumps(
        record.model_dump(mode="json"), separators=(",", ":"), sort_keys=True
    ).encode("utf-8")


def _decode(data: bytes) -> Record:
    return Record.model_validate(json.loads(data.decode("utf-8")))


@dataclass
class S3ObjectRef:
    bucket: str
    key: str


class S3RecordStore:
    """
    The single credential record as one Fernet-encrypted JSON object in S3.

    - `read()` returns `(record, etag)`; a missing object reads as
      `(Record.initial(), None)`, the state before anything was submitted.
    - `write(record, if_match=etag)` replaces the object only if it still has
      `etag`, else raises `OptimisticLockError` and leaves it untouched.
      Without `if_match` the object is overwritten.

    The fernet key is the urlsafe base64 key from `Fernet.generate_key()`,
    supplied by the caller (the Lambda handler reads it from SSM).
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        key: str,
        fernet_key: str | bytes,
        region_name: Optional[str] = None,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._obj = S3ObjectRef(bucket=bucket, key=key)
        self._fernet = _to_fernet(fernet_key)

    @property
    def location(self) -> str:
        return f"s3://{self._obj.bucket}/{self._obj.key}"

    def read(self) -> Tuple[Record, Optional[str]]:
        """Fetch and decrypt the record.

        Raises StoreError when the object cannot be decrypted or is not a
        valid record; other S3 client errors propagate as-is.
        """
        try:
            resp = self._s3.get_object(Bucket=self._obj.bucket, Key=self._obj.key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                logger.debug("No record at %s; starting from initial record", self.location)
                return (Record.initial(), None)
            raise

        body = resp["Body"].read()
        try:
            plaintext = self._fernet.decrypt(body)
        except InvalidToken as ex:
            raise StoreError(f"Cannot decrypt record at {self.location}") from ex

        try:
            record = _decode(plaintext)
        except (ValueError, ValidationError) as ex:
            raise StoreError(f"Malformed record at {self.location}") from ex

        return (record, resp.get("ETag"))

    def write(self, record: Record, *, if_match: Optional[str] = None) -> str:
        """Encrypt and store `record`; returns the new ETag."""
        ciphertext = self._fernet.encrypt(_encode(record))

        if if_match is None:
            resp = self._s3.put_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                Body=ciphertext,
                ContentType="application/octet-stream",
            )
            return str(resp.get("ETag"))

        # PutObject has no If-Match: stage under a temp key, then copy over
        # the record conditionally on its current ETag.
        temp_key = f"{self._obj.key}.tmp-{uuid4().hex}"
        self._s3.put_object(
            Bucket=self._obj.bucket,
            Key=temp_key,
            Body=ciphertext,
            ContentType="application/octet-stream",
        )

        try:
            resp = self._s3.copy_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                CopySource={"Bucket": self._obj.bucket, "Key": temp_key},
                IfMatch=if_match,
                MetadataDirective="COPY",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("PreconditionFailed", "412"):
                raise OptimisticLockError(f"Record at {self.location} changed since it was read") from e
            raise
        finally:
            try:
                self._s3.delete_object(Bucket=self._obj.bucket, Key=temp_key)
            except ClientError:
                logger.warning("Failed to delete temporary object %s", temp_key)

        return str(resp.get("ETag"))
