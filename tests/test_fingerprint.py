import hashlib

from tokenward.service.fingerprint import (
    FINGERPRINT_LENGTH,
    DeviceInfo,
    compute_device_fingerprint,
)


def test_fingerprint_is_truncated_sha256_of_joined_fields():
    expected = hashlib.sha256(b"Mozilla/5.0|device-1").hexdigest()[:16]

    assert compute_device_fingerprint("Mozilla/5.0", "device-1") == expected
    assert len(expected) == FINGERPRINT_LENGTH


def test_fingerprint_is_deterministic():
    first = compute_device_fingerprint("agent", "dev")
    second = compute_device_fingerprint("agent", "dev")
    assert first == second


def test_different_devices_differ():
    assert compute_device_fingerprint("agent", "dev-a") != compute_device_fingerprint(
        "agent", "dev-b"
    )


def test_missing_fields_hash_as_empty_strings():
    assert compute_device_fingerprint(None, None) == compute_device_fingerprint("", "")
    assert DeviceInfo().fingerprint == compute_device_fingerprint("", "")


def test_coerce_accepts_mapping_none_and_instance():
    info = DeviceInfo(user_agent="agent", device_id="dev")

    assert DeviceInfo.coerce(None) == DeviceInfo()
    assert DeviceInfo.coerce(info) is info
    assert DeviceInfo.coerce({"user_agent": "agent", "device_id": "dev"}) == info
    assert DeviceInfo.coerce({"user_agent": "agent"}).device_id == ""
