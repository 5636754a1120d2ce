import pytest

from sp_validator.core.encryption import EncryptionError, EncryptionService


def test_round_trip_and_fresh_iv():
    service = EncryptionService("a-test-master-key-that-is-long-enough")
    value = {"client_secret": "s3cret", "nested": [1, 2]}

    first = service.encrypt_field("validations", "credentials", value)
    second = service.encrypt_field("validations", "credentials", value)

    assert first != second
    assert "s3cret" not in first
    assert service.is_encrypted_value(first)
    assert service.decrypt_field("validations", "credentials", first) == value


def test_wrong_key_cannot_decrypt():
    token = EncryptionService("first-master-key-0123456789abcdef").encrypt_field("jobs", "payload", {"a": 1})

    with pytest.raises(EncryptionError):
        EncryptionService("second-master-key-0123456789abcdef").decrypt_field("jobs", "payload", token)


def test_none_passes_through():
    service = EncryptionService("a-test-master-key-that-is-long-enough")

    assert service.encrypt_field("jobs", "payload", None) is None
    assert service.decrypt_field("jobs", "payload", None) is None


def test_plaintext_json_is_not_mistaken_for_ciphertext():
    service = EncryptionService("a-test-master-key-that-is-long-enough")

    assert service.is_encrypted_value('{"validation_id":"v-1"}') is False
