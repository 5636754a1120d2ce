from sp_validator.core.redaction import (
    REDACTED,
    is_sensitive_key,
    mask_identifier,
    redact_sensitive_data,
    redact_string,
)


def test_nested_credentials_are_redacted():
    data = {
        "validation_id": "v-1",
        "credentials": {"client_secret": "abc"},
        "webhook": {"Authorization": "Bearer xyz", "attempt": 2},
        "items": [{"access_token": "t"}, "plain"],
    }

    redacted = redact_sensitive_data(data)

    assert redacted["validation_id"] == "v-1"
    assert redacted["credentials"] == REDACTED
    assert redacted["webhook"] == {"Authorization": REDACTED, "attempt": 2}
    assert redacted["items"] == [{"access_token": REDACTED}, "plain"]
    assert data["credentials"] == {"client_secret": "abc"}


def test_secret_in_query_string_is_redacted():
    url = "https://hooks.example.com/x?validation_id=1&client_secret=hunter2&status=valid"

    assert redact_string(url) == "https://hooks.example.com/x?validation_id=1&client_secret=[REDACTED]&status=valid"


def test_bearer_and_jwt_redacted():
    text = "sent Bearer abc.def and eyJhbGciOi.eyJzdWIiOi.c2lnbmF0dXJl"

    result = redact_string(text)

    assert "abc.def" not in result
    assert "[REDACTED_JWT]" in result or "Bearer [REDACTED]" in result


def test_sensitive_key_fragments():
    assert is_sensitive_key("X-API-Key")
    assert is_sensitive_key("clientSecretValue")
    assert not is_sensitive_key("subscription_id")


def test_mask_identifier():
    assert mask_identifier("22222222-2222-2222-2222-22222222abcd") == "****abcd"
    assert mask_identifier("abc") == "***"
    assert mask_identifier("") == ""
