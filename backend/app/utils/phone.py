import re

from app.core.config import get_settings

_NON_DIGITS = re.compile(r"\D+")


def normalize_phone(raw: str) -> str:
    """Digits-only phone with country code (Mexican numbers get ``52``).

    Accepts ``whatsapp:+52...`` and ``+1 (555) ...`` style input. Raises ValueError when
    the digits cannot form a phone number.
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) == 10:
        return f"52{digits}"
    if len(digits) == 12 and digits.startswith("52"):
        return digits
    if len(digits) == 11 and digits.startswith("1"):
        return digits
    if 10 <= len(digits) <= 15:
        return digits
    raise ValueError(f"Invalid phone number: {raw!r}")


def redact_phone(value: str) -> str:
    if not value:
        return ""
    # Keep last 3 digits for operator traceability; mask the rest.
    tail = value[-3:] if len(value) >= 3 else value
    return f"***{tail}"


def log_safe(value: str) -> str:
    """Redact *value* for logs when PII redaction is on. Email addresses keep their domain."""
    if not value or not get_settings().pii_redaction_enabled:
        return value or ""
    if "@" in value:
        _, _, domain = value.partition("@")
        return f"***@{domain}"
    return redact_phone(value)
