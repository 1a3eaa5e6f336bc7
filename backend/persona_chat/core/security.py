from __future__ import annotations

import re
import secrets
from typing import Mapping

SECRET_PATTERN = re.compile(r"(sk-(?:ant-)?[A-Za-z0-9_-]{6,})")

RAW_OUTPUT_HEADER = "x-admin-raw-output"
ADMIN_TOKEN_HEADER = "x-admin-token"


def redact_secrets(text: str) -> str:
    """Redact API keys or similar secrets from a string."""

    return SECRET_PATTERN.sub("sk-***", text)


def sanitize_text(text: str, max_length: int) -> str:
    """Trim and clamp user-provided text to a safe length."""

    cleaned = text.strip()
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length]
    return cleaned


def raw_output_allowed(headers: Mapping[str, str], admin_token: str) -> bool:
    """Return True when the request is a verified admin asking for unfiltered output.

    Both the raw-output flag and a matching admin token are required; with no
    token configured the bypass is never granted.
    """

    if not admin_token:
        return False
    if headers.get(RAW_OUTPUT_HEADER, "").strip().lower() != "true":
        return False
    supplied = headers.get(ADMIN_TOKEN_HEADER, "")
    return secrets.compare_digest(supplied.encode("utf-8"), admin_token.encode("utf-8"))
