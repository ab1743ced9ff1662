from __future__ import annotations

import re
from typing import Any


_EMAIL_RE = re.compile(r"\b([A-Za-z0-9._%+-])([A-Za-z0-9._%+-]*)(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
_PHONE_RE = re.compile(r"\+\d{6,15}")
# PaymentIntent / SetupIntent client secrets: pi_123_secret_abc
_CLIENT_SECRET_RE = re.compile(r"\b((?:pi|seti)_[A-Za-z0-9]+)_secret_[A-Za-z0-9]+\b")
# Stripe-Signature header values: t=...,v1=...
_SIGNATURE_RE = re.compile(r"\b(v1|v0)=[0-9a-fA-F]{16,}")

_SENSITIVE_KEY_MARKERS = (
    "token",
    "authorization",
    "secret",
    "signature",
    "password",
    "api_key",
)


def _mask_email(match: re.Match) -> str:
    return f"{match.group(1)}***{match.group(3)}"


def _mask_phone(match: re.Match) -> str:
    value = match.group(0)
    if len(value) <= 8:
        return value
    return f"{value[:6]}****{value[-2:]}"


def redact_text(value: str) -> str:
    masked = _EMAIL_RE.sub(_mask_email, value)
    masked = _PHONE_RE.sub(_mask_phone, masked)
    masked = _CLIENT_SECRET_RE.sub(lambda m: f"{m.group(1)}_secret_***", masked)
    masked = _SIGNATURE_RE.sub(lambda m: f"{m.group(1)}=***", masked)

    for marker in ("access_token", "refresh_token", "bearer "):
        if marker in masked.lower():
            return "[REDACTED]"

    return masked


def _is_sensitive_key(key: str) -> bool:
    key_l = (key or "").lower()
    return any(marker in key_l for marker in _SENSITIVE_KEY_MARKERS)


def redact_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, list):
        return [redact_value(v) for v in value]
    return value


def redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in payload.items():
        if _is_sensitive_key(k):
            out[k] = "[REDACTED]"
        else:
            out[k] = redact_value(v)
    return out
