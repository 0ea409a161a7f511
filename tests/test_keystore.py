import json
import os
import stat

import pytest
from botocore.exceptions import ClientError

from awskmsluks import keystore
from awskmsluks.errors import KeyNotFoundError, KeyParseError, StoreError


def test_persist_uses_host_and_uuid_paths(tmp_path, fake_s3, key_factory):
    key = key_factory(fqdn="host1", uuid="abc-123", plain=b"secret")
    root = str(tmp_path / "keys")

    path = keystore.persist(key, "bucket", root, fake_s3)

    assert path == os.path.join(root, "host1", "abc-123.json")
    assert os.path.relpath(path, str(tmp_path)) == os.path.join("keys", "host1", "abc-123.json")
    assert ("bucket", "host1/abc-123.json") in fake_s3.objects


def test_persist_redacts_both_copies(tmp_path, fake_s3, key_factory):
    key = key_factory(plain=b"secret")
    root = str(tmp_path / "keys")

    path = keystore.persist(key, "bucket", root, fake_s3)

    local = json.loads(open(path, encoding="utf-8").read())
    remote = json.loads(fake_s3.objects[("bucket", "host1/abc-123.json")])
    for copy in (local, remote):
        assert "Plain" not in copy["DataKey"]
        assert copy["DataKey"]["Encrypted"] == key.data_key.encrypted
    assert local == remote
    assert key.data_key.plain == bytearray(b"secret")


def test_store_creates_private_file(tmp_path, key_factory):
    path = keystore.store(key_factory(), str(tmp_path))
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    # a second store for the same host reuses the directory
    keystore.store(key_factory(uuid="def-456"), str(tmp_path))
    assert sorted(os.listdir(tmp_path / "host1")) == ["abc-123.json", "def-456.json"]


def test_persist_archives_before_storing(tmp_path, monkeypatch, fake_s3, key_factory):
    order = []
    monkeypatch.setattr(keystore, "archive", lambda key, bucket, client=None: order.append("archive"))
    monkeypatch.setattr(keystore, "store", lambda key, root: order.append("store") or "path")

    keystore.persist(key_factory(), "bucket", str(tmp_path), fake_s3)
    assert order == ["archive", "store"]


def test_archive_failure_skips_local_write(tmp_path, key_factory):
    class BrokenS3:
        def put_object(self, **kwargs):
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")

    with pytest.raises(StoreError) as excinfo:
        keystore.persist(key_factory(), "bucket", str(tmp_path), BrokenS3())
    assert excinfo.value.archived is False
    assert not (tmp_path / "host1").exists()


def test_local_failure_after_archive_points_to_restore(tmp_path, fake_s3, key_factory):
    blocker = tmp_path / "keys"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(StoreError) as excinfo:
        keystore.persist(key_factory(), "bucket", str(blocker), fake_s3)

    assert excinfo.value.archived is True
    assert "-restore abc-123" in str(excinfo.value)
    assert ("bucket", "host1/abc-123.json") in fake_s3.objects


def test_restore_copies_archive_to_local_store(tmp_path, fake_s3, key_factory):
    key = key_factory()
    keystore.archive(key, "bucket", fake_s3)
    root = str(tmp_path / "keys")

    restored = keystore.restore("bucket", "host1", "abc-123", root, fake_s3)

    assert restored.uuid == "abc-123"
    assert keystore.load(root, "host1", "abc-123").data_key.encrypted == key.data_key.encrypted


def test_restore_missing_object(tmp_path, fake_s3):
    with pytest.raises(KeyNotFoundError):
        keystore.restore("bucket", "host1", "nope", str(tmp_path), fake_s3)


def test_load_round_trip(tmp_path, key_factory):
    key = key_factory(plain=b"secret")
    keystore.store(key, str(tmp_path))

    loaded = keystore.load(str(tmp_path), "host1", "abc-123")

    assert loaded.encryption_context == key.encryption_context
    assert loaded.data_key.encrypted == key.data_key.encrypted
    assert not loaded.unwrapped


def test_load_missing_key(tmp_path):
    with pytest.raises(KeyNotFoundError):
        keystore.load(str(tmp_path), "host1", "missing")


def test_load_corrupt_key(tmp_path):
    (tmp_path / "host1").mkdir()
    (tmp_path / "host1" / "abc-123.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(KeyParseError):
        keystore.load(str(tmp_path), "host1", "abc-123")


def test_load_rejects_record_filed_under_wrong_uuid(tmp_path, key_factory):
    keystore.store(key_factory(uuid="abc-123"), str(tmp_path))
    os.rename(tmp_path / "host1" / "abc-123.json", tmp_path / "host1" / "other.json")
    with pytest.raises(KeyParseError):
        keystore.load(str(tmp_path), "host1", "other")


def test_generate_persist_load_unwrap_round_trip(tmp_path, fake_s3, stub_authority):
    from awskmsluks.kms import new_data_key

    key = new_data_key(stub_authority, "arn:aws:kms:us-east-1:111122223333:key/abcd", "host1", False)
    generated = bytes(key.data_key.plain)
    keystore.persist(key, "bucket", str(tmp_path), fake_s3)

    loaded = keystore.retrieve(str(tmp_path), "host1", key.uuid, stub_authority)
    assert bytes(loaded.data_key.plain) == generated


def test_enumerate_all_continues_past_corrupt_records(tmp_path, key_factory):
    root = str(tmp_path)
    keystore.store(key_factory(uuid="aaa"), root)
    keystore.store(key_factory(uuid="ccc"), root)
    (tmp_path / "host1" / "bbb.json").write_text("garbage", encoding="utf-8")
    (tmp_path / "host1" / "notes.txt").write_text("ignored", encoding="utf-8")

    results = list(keystore.enumerate_all(root, "host1"))

    assert [uuid for uuid, _ in results] == ["aaa", "bbb", "ccc"]
    assert isinstance(results[1][1], KeyParseError)
    assert results[0][1].uuid == "aaa"
    assert results[2][1].uuid == "ccc"


def test_enumerate_all_without_host_directory(tmp_path):
    assert list(keystore.enumerate_all(str(tmp_path), "host1")) == []
