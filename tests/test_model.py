import json
from datetime import datetime, timezone

import pytest

from awskmsluks.model import EncryptionContext, Key, format_timestamp, parse_timestamp


def test_serialized_record_never_carries_plaintext(key_factory):
    key = key_factory(plain=b"super-secret")
    assert key.unwrapped

    text = key.to_json()
    payload = json.loads(text)

    assert "Plain" not in payload["DataKey"]
    assert "super-secret" not in text
    assert key.data_key.plain == bytearray(b"super-secret")


def test_record_field_order_is_stable(key_factory):
    payload = json.loads(key_factory().to_json())
    assert list(payload) == ["EncryptionContext", "CMKARN", "DataKey"]
    assert list(payload["EncryptionContext"]) == ["FQDN", "Production", "UUID"]
    assert list(payload["DataKey"]) == ["Encrypted", "Created"]
    assert payload["DataKey"]["Created"] == "2024-05-01T12:30:00Z"


def test_from_json_round_trips_context(key_factory):
    original = key_factory(production=True)
    loaded = Key.from_json(original.to_json())
    assert loaded.encryption_context == original.encryption_context
    assert loaded.cmk_arn == original.cmk_arn
    assert loaded.data_key.encrypted == original.data_key.encrypted
    assert loaded.data_key.created == original.data_key.created
    assert loaded.data_key.plain == bytearray()
    assert loaded.complete


def test_from_dict_rejects_mistyped_fields(key_factory):
    payload = key_factory().to_dict()
    payload["EncryptionContext"]["Production"] = "false"
    with pytest.raises(ValueError):
        Key.from_dict(payload)
    with pytest.raises(KeyError):
        Key.from_dict({"CMKARN": "x"})


def test_wipe_zeroes_buffer_in_place(key_factory):
    key = key_factory(plain=b"abc")
    buf = key.data_key.plain
    key.wipe()
    assert buf == bytearray()
    assert not key.unwrapped


def test_kms_context_uses_lowercase_booleans():
    ec = EncryptionContext(fqdn="host1", production=True, uuid="abc-123")
    assert ec.to_kms() == {"fqdn": "host1", "production": "true", "uuid": "abc-123"}
    assert EncryptionContext("h", False, "u").to_kms()["production"] == "false"


@pytest.mark.parametrize(
    "raw",
    [
        "2019-03-04T05:06:07.123456789Z",
        "2019-03-04T05:06:07.123456+00:00",
        "2019-03-04T05:06:07.123456Z",
    ],
)
def test_parse_timestamp_accepts_rfc3339(raw):
    value = parse_timestamp(raw)
    assert value == datetime(2019, 3, 4, 5, 6, 7, 123456, tzinfo=timezone.utc)


def test_format_timestamp_treats_naive_as_utc():
    assert format_timestamp(datetime(2020, 1, 2, 3, 4, 5)) == "2020-01-02T03:04:05Z"
