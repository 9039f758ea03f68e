"""Masking of secret-like values before they are logged or persisted."""

from typing import Any


SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN")

# Gateway payload fields that must never reach the payments table.
SENSITIVE_FIELDS = {
    "authorization_code",
    "card_number",
    "cvv",
    "cvc",
    "pan",
    "signature",
    "email",
    "phone",
    "account_number",
    "bin",
    "last4",
}

MASK = "***"


def is_secret_name(name: str) -> bool:
    upper = name.upper()
    return any(marker in upper for marker in SECRET_MARKERS)


def mask_payload(value: Any) -> Any:
    """Return a deep copy of `value` with sensitive keys replaced by a mask."""

    if isinstance(value, dict):
        masked = {}
        for key, item in value.items():
            if isinstance(key, str) and (key.lower() in SENSITIVE_FIELDS or is_secret_name(key)):
                masked[key] = MASK
            else:
                masked[key] = mask_payload(item)
        return masked
    if isinstance(value, list):
        return [mask_payload(item) for item in value]
    return value
