from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from awskmsluks import executil
from awskmsluks.model import DataKey, EncryptionContext, Key

CMK_ARN = "arn:aws:kms:us-east-1:111122223333:key/abcd"


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path, monkeypatch):
    log_dir = tmp_path / "logs"
    monkeypatch.setattr(executil, "LOG_DIRS", [str(log_dir)])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    return log_dir


class FakeKMS:
    """In-memory stand-in for a boto3 KMS client.

    Ciphertexts embed the encryption context so decrypt can refuse a
    mismatch the way KMS does.
    """

    def __init__(self, plaintext: bytes = b"\x01" * 1024):
        self.plaintext = plaintext
        self.calls = []

    def generate_data_key(self, KeyId, NumberOfBytes, EncryptionContext):
        self.calls.append(("generate_data_key", KeyId, NumberOfBytes, dict(EncryptionContext)))
        blob = json.dumps({"ctx": EncryptionContext, "key": self.plaintext.hex()}, sort_keys=True).encode()
        return {"Plaintext": self.plaintext, "CiphertextBlob": blob, "KeyId": KeyId}

    def decrypt(self, KeyId, CiphertextBlob, EncryptionContext):
        self.calls.append(("decrypt", KeyId, dict(EncryptionContext)))
        try:
            payload = json.loads(CiphertextBlob)
        except ValueError:
            payload = None
        if not payload or payload["ctx"] != EncryptionContext:
            raise ClientError(
                {"Error": {"Code": "InvalidCiphertextException", "Message": "context mismatch"}},
                "Decrypt",
            )
        return {"Plaintext": bytes.fromhex(payload["key"]), "KeyId": KeyId}


@pytest.fixture
def fake_kms():
    return FakeKMS()


@pytest.fixture
def kms_factory(fake_kms):
    regions = []

    def factory(region):
        regions.append(region)
        return fake_kms

    factory.regions = regions
    return factory


def make_key(fqdn="host1", uuid="abc-123", production=False, encrypted="Q0lQSEVS", plain=b""):
    return Key(
        encryption_context=EncryptionContext(fqdn=fqdn, production=production, uuid=uuid),
        cmk_arn=CMK_ARN,
        data_key=DataKey(
            encrypted=encrypted,
            created=datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc),
            plain=bytearray(plain),
        ),
    )


class StubAuthority:
    """Key authority returning a fixed plaintext/ciphertext pair."""

    def __init__(self, plain=b"P", encrypted="C"):
        self.plain = plain
        self.encrypted = encrypted
        self.generated = []
        self.unwrapped = []

    def generate(self, cmk_arn, context):
        self.generated.append((cmk_arn, context))
        return bytearray(self.plain), self.encrypted

    def unwrap(self, encrypted, context, cmk_arn):
        self.unwrapped.append((encrypted, context, cmk_arn))
        return bytearray(self.plain)


class FakeS3:
    def __init__(self):
        self.objects = {}
        self.calls = []

    def put_object(self, Bucket, Key, Body, ContentType=None):
        self.calls.append(("put_object", Bucket, Key))
        self.objects[(Bucket, Key)] = bytes(Body)
        return {}

    def get_object(self, Bucket, Key):
        self.calls.append(("get_object", Bucket, Key))
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        body = self.objects[(Bucket, Key)]
        return {"Body": _Body(body)}


class _Body:
    def __init__(self, data):
        self._data = data

    def read(self):
        return self._data


@pytest.fixture
def key_factory():
    return make_key


@pytest.fixture
def stub_authority():
    return StubAuthority()


@pytest.fixture
def fake_s3():
    return FakeS3()
