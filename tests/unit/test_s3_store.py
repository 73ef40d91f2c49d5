from __future__ import annotations

import hashlib

import pytest
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet

from state.models import Credential, Phase, Record
from state.s3_store import OptimisticLockError, S3RecordStore, StoreError


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


def _etag(body: bytes) -> str:
    return f'"{hashlib.md5(body).hexdigest()}"'


class _FakeS3:
    def __init__(self) -> None:
        self._store = {}  # (bucket, key) -> {Body: bytes, ETag: str}
        self.deleted = []

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str):
        etag = _etag(Body)
        self._store[(Bucket, Key)] = {"Body": Body, "ETag": etag}
        return {"ETag": etag}

    def get_object(self, *, Bucket: str, Key: str):
        item = self._store.get((Bucket, Key))
        if not item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": _FakeBody(item["Body"]), "ETag": item["ETag"]}

    def copy_object(
        self,
        *,
        Bucket: str,
        Key: str,
        CopySource,
        IfMatch: str | None = None,
        MetadataDirective: str | None = None,
    ):
        dest_item = self._store.get((Bucket, Key))
        if IfMatch is not None:
            if not dest_item or dest_item.get("ETag") != IfMatch:
                raise ClientError({"Error": {"Code": "PreconditionFailed"}}, "CopyObject")

        src_item = self._store.get((CopySource["Bucket"], CopySource["Key"]))
        if not src_item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "CopyObject")

        body = src_item["Body"]
        etag = _etag(body)
        self._store[(Bucket, Key)] = {"Body": body, "ETag": etag}
        return {"ETag": etag}

    def delete_object(self, *, Bucket: str, Key: str):
        self.deleted.append(Key)
        self._store.pop((Bucket, Key), None)
        return {}

    def keys(self):
        return [k for (_b, k) in self._store]


@pytest.fixture
def fernet_key() -> bytes:
    return Fernet.generate_key()


def _done(name: str = "Gmail", secret: str = "S1") -> Record:
    return Record(phase=Phase.DONE, credential=Credential(name=name, secret=secret))


def test_read_missing_returns_initial_record(fernet_key):
    store = S3RecordStore(s3=_FakeS3(), bucket="b", key="k", fernet_key=fernet_key)

    record, etag = store.read()
    assert etag is None
    assert record == Record.initial()
    assert record.phase == Phase.INIT
    assert record.active_credential is None


def test_write_and_read_roundtrip(fernet_key):
    s3 = _FakeS3()
    store = S3RecordStore(s3=s3, bucket="b", key="k", fernet_key=fernet_key)

    etag = store.write(_done())
    record, read_etag = store.read()
    assert read_etag == etag
    assert record == _done()
    assert record.active_credential == Credential(name="Gmail", secret="S1")


def test_secret_is_encrypted_at_rest(fernet_key):
    s3 = _FakeS3()
    store = S3RecordStore(s3=s3, bucket="b", key="k", fernet_key=fernet_key)

    store.write(_done(secret="TestSecretSuperSecret"))
    body = s3.get_object(Bucket="b", Key="k")["Body"].read()
    assert b"TestSecretSuperSecret" not in body
    assert b'"phase":"done"' in Fernet(fernet_key).decrypt(body)


def test_read_raises_store_error_on_bad_token(fernet_key):
    s3 = _FakeS3()
    s3.put_object(Bucket="b", Key="k", Body=b"garbage", ContentType="application/octet-stream")

    store = S3RecordStore(s3=s3, bucket="b", key="k", fernet_key=fernet_key)
    with pytest.raises(StoreError):
        store.read()


def test_read_raises_store_error_on_foreign_payload(fernet_key):
    s3 = _FakeS3()
    body = Fernet(fernet_key).encrypt(b'{"phase":1,"credential":{}}')
    s3.put_object(Bucket="b", Key="k", Body=body, ContentType="application/octet-stream")

    store = S3RecordStore(s3=s3, bucket="b", key="k", fernet_key=fernet_key)
    with pytest.raises(StoreError):
        store.read()


def test_read_propagates_other_client_errors(fernet_key):
    class _DeniedS3(_FakeS3):
        def get_object(self, *, Bucket: str, Key: str):
            raise ClientError({"Error": {"Code": "AccessDenied"}}, "GetObject")

    store = S3RecordStore(s3=_DeniedS3(), bucket="b", key="k", fernet_key=fernet_key)
    with pytest.raises(ClientError):
        store.read()


def test_write_with_if_match_succeeds_when_etag_matches(fernet_key):
    s3 = _FakeS3()
    store = S3RecordStore(s3=s3, bucket="b", key="k", fernet_key=fernet_key)

    etag1 = store.write(Record.initial())
    etag2 = store.write(_done(), if_match=etag1)
    assert etag2 != etag1

    record, read_etag = store.read()
    assert read_etag == etag2
    assert record == _done()
    # temporary upload object is cleaned up
    assert s3.keys() == ["k"]
    assert len(s3.deleted) == 1


def test_write_with_if_match_raises_on_conflict(fernet_key):
    s3 = _FakeS3()
    store1 = S3RecordStore(s3=s3, bucket="b", key="k", fernet_key=fernet_key)
    store2 = S3RecordStore(s3=s3, bucket="b", key="k", fernet_key=fernet_key)

    etag1 = store1.write(Record.initial())
    store1.write(_done(secret="S1"), if_match=etag1)

    with pytest.raises(OptimisticLockError):
        store2.write(_done(secret="S2"), if_match=etag1)

    # the losing write leaves the stored record intact
    record, _ = store1.read()
    assert record.credential.secret == "S1"


def test_write_without_if_match_overwrites(fernet_key):
    s3 = _FakeS3()
    store = S3RecordStore(s3=s3, bucket="b", key="k", fernet_key=fernet_key)
    store.write(_done(secret="S1"))

    etag = store.write(Record.initial())

    record, read_etag = store.read()
    assert read_etag == etag
    assert record == Record.initial()
    assert s3.deleted == []
