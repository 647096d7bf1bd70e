"""Tests for webhook callback authentication."""

from atelier.services.webhook_signature import (
    authenticate_callback,
    compute_signature,
    validate_webhook_signature,
)

SECRET = "test_webhook_secret_12345"
BODY = b'{"taskId": "task-1", "code": 200}'


def test_valid_signature_passes():
    assert validate_webhook_signature(BODY, compute_signature(BODY, SECRET), SECRET) is True


def test_prefixed_and_uppercase_signature_passes():
    signature = "sha256=" + compute_signature(BODY, SECRET).upper()

    assert validate_webhook_signature(BODY, signature, SECRET) is True


def test_tampered_body_fails():
    signature = compute_signature(BODY, SECRET)

    assert validate_webhook_signature(BODY + b" ", signature, SECRET) is False


def test_wrong_secret_fails():
    signature = compute_signature(BODY, "another-secret")

    assert validate_webhook_signature(BODY, signature, SECRET) is False


def test_empty_secret_disables_verification():
    assert authenticate_callback(BODY, "") is True


def test_configured_secret_requires_credentials():
    assert authenticate_callback(BODY, SECRET) is False


def test_signature_or_shared_secret_authenticates():
    assert authenticate_callback(BODY, SECRET, signature=compute_signature(BODY, SECRET))
    assert authenticate_callback(BODY, SECRET, shared_secret=SECRET)
    assert not authenticate_callback(BODY, SECRET, shared_secret="guess")
    assert not authenticate_callback(BODY, SECRET, signature="bad", shared_secret="guess")
