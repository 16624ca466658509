"""Unit tests for portal/utils/sanitizer.py."""

from __future__ import annotations

from portal.utils.sanitizer import (
    sanitize_api_key,
    sanitize_auth_header,
    sanitize_email,
    sanitize_error,
    sanitize_headers,
    sanitize_object,
    sanitize_password,
    sanitize_token,
)

FULL_KEY = "sk_live_" + "ab" * 32


def test_api_key_keeps_edges() -> None:
    assert sanitize_api_key(FULL_KEY) == "sk_live_...abab"
    assert sanitize_api_key("short") == "***"
    assert sanitize_api_key(None) == "***"


def test_password_is_capped() -> None:
    assert sanitize_password("abc") == "***"
    assert sanitize_password("a-very-long-password") == "********"
    assert sanitize_password("") == "***"


def test_token() -> None:
    token = "0123456789abcdef0123"
    assert sanitize_token(token) == "01234567...0123"
    assert sanitize_token("tiny") == "***"


def test_email() -> None:
    assert sanitize_email("jane@example.com") == "j***@example.com"
    assert sanitize_email("@example.com") == "***@example.com"
    assert sanitize_email("not-an-email") == "***"


class TestSanitizeObject:
    def test_masks_named_fields_recursively(self) -> None:
        data = {
            "username": "john",
            "password": "secret123",
            "nested": {"api_key": FULL_KEY, "session_token": "0123456789abcdef0123"},
            "items": [{"token": "abcdefghijklmnop"}],
        }
        result = sanitize_object(data)
        assert result["username"] == "john"
        assert result["password"] == "********"
        assert result["nested"]["api_key"] == "sk_live_...abab"
        assert result["nested"]["session_token"] == "01234567...0123"
        assert result["items"][0]["token"] == "abcdefgh...mnop"

    def test_input_not_mutated(self) -> None:
        data = {"password": "secret123"}
        sanitize_object(data)
        assert data == {"password": "secret123"}

    def test_non_string_secret_masked(self) -> None:
        assert sanitize_object({"secret": 12345}) == {"secret": "***"}

    def test_scalars_pass_through(self) -> None:
        assert sanitize_object(42) == 42
        assert sanitize_object(None) is None
        assert sanitize_object(("a", {"password": "xyz"})) == ("a", {"password": "***"})


class TestSanitizeError:
    def test_redacts_keys_and_bearer(self) -> None:
        message = sanitize_error(RuntimeError(f"rejected {FULL_KEY} with Bearer abc.def"))
        assert FULL_KEY not in message
        assert "[REDACTED_API_KEY]" in message
        assert "abc.def" not in message

    def test_redacts_key_value_pairs(self) -> None:
        message = sanitize_error("password=hunter2, token: xyz123, api-key=foo")
        assert "hunter2" not in message
        assert "xyz123" not in message
        assert "foo" not in message

    def test_none_and_empty(self) -> None:
        assert sanitize_error(None) == "Unknown error"
        assert sanitize_error(ValueError()) == "ValueError"


def test_auth_header() -> None:
    assert sanitize_auth_header(f"Bearer {FULL_KEY}") == "Bearer [REDACTED_TOKEN]"
    assert sanitize_auth_header("Basic dXNlcjpwYXNz") == "Basic [REDACTED_CREDENTIALS]"
    assert sanitize_auth_header("Digest x") == "[REDACTED_AUTH]"
    assert sanitize_auth_header(None) == "***"


def test_headers_case_insensitive() -> None:
    headers = {
        "Authorization": f"Bearer {FULL_KEY}",
        "Cookie": "session_token=abc",
        "X-API-Key": FULL_KEY,
        "Accept": "application/json",
    }
    result = sanitize_headers(headers)
    assert result["Authorization"] == "Bearer [REDACTED_TOKEN]"
    assert result["Cookie"] == "[REDACTED]"
    assert result["X-API-Key"] == "[REDACTED]"
    assert result["Accept"] == "application/json"
    assert headers["Cookie"] == "session_token=abc"
