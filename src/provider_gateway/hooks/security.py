from __future__ import annotations

import re

SECRET_PATTERNS = [
    re.compile(r"\bsk-[A-Za-z0-9_-]{20,}\b"),
    re.compile(r"\bBearer\s+[A-Za-z0-9._\-]{20,}\b", re.IGNORECASE),
    re.compile(r"(\"(?:access_token|refresh_token|api_key)\"\s*:\s*\")[^\"]+(\")"),
]


def mask_sensitive_text(text: str) -> str:
    masked = text
    for pattern in SECRET_PATTERNS:
        if pattern.groups:
            masked = pattern.sub(r"\1[REDACTED]\2", masked)
        else:
            masked = pattern.sub("[REDACTED]", masked)
    return masked
