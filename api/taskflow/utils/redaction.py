"""Redaction helpers for webhook targets and error strings written to logs or run records."""

from __future__ import annotations

import re
from collections.abc import Mapping

_URL_USERINFO_RE = re.compile(r"([a-z][a-z0-9+.-]*://)([^@/\s]+)@", re.IGNORECASE)
_QUERY_SECRET_RE = re.compile(
    r"(?i)(token|secret|password|signature|api_key|apikey|access_token)=([^&\s]+)"
)
_BEARER_RE = re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/-]+=*)")
_SENSITIVE_HEADERS = {"authorization", "proxy-authorization", "cookie", "x-api-key", "x-webhook-secret"}


def redact_secrets(text: str) -> str:
    """Mask credentials embedded in URLs, query strings, and bearer tokens."""
    if not text:
        return text
    redacted = _URL_USERINFO_RE.sub(r"\1***@", text)
    redacted = _QUERY_SECRET_RE.sub(r"\1=***", redacted)
    return _BEARER_RE.sub(r"\1***", redacted)


def redact_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    """Return a copy of request headers with credential-bearing values masked."""
    if not headers:
        return {}
    return {
        name: "***" if name.lower() in _SENSITIVE_HEADERS else value
        for name, value in headers.items()
    }
