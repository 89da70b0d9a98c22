"""
Tests for phone normalisation and log redaction.
"""

import pytest

from app.utils.phone import log_safe, normalize_phone, redact_phone
from tests.conftest import settings_env


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("5512345678", "525512345678"),
        ("whatsapp:+5215512345678", "5215512345678"),
        ("+52 55 1234 5678", "525512345678"),
        ("+1 (555) 123-4567", "15551234567"),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["", "123", "abc", "1234567890123456"])
def test_normalize_phone_rejects(raw):
    with pytest.raises(ValueError):
        normalize_phone(raw)


def test_redact_phone():
    assert redact_phone("5215512345678") == "***678"
    assert redact_phone("12") == "***12"
    assert redact_phone("") == ""


def test_log_safe_redacts_by_default():
    assert log_safe("5215512345678") == "***678"
    assert log_safe("ana@example.mx") == "***@example.mx"


def test_log_safe_passthrough_when_disabled():
    with settings_env(PII_REDACTION_ENABLED="false"):
        assert log_safe("5215512345678") == "5215512345678"
