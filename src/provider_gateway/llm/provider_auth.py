from __future__ import annotations

from .models import ProviderId

QWEN_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
VERSIONED_SUFFIXES = ("/v1", "/compatible-mode/v1")


def build_oauth_headers(content_type: str | None = None) -> dict[str, str]:
    headers = {
        "Accept": "application/json",
        "User-Agent": QWEN_USER_AGENT,
    }
    if content_type:
        headers["Content-Type"] = content_type
    return headers


def build_provider_auth_headers(*, provider: ProviderId, secret: str) -> dict[str, str]:
    key = secret.strip()
    if not key:
        raise ValueError(f"{provider.value} credential is empty")

    headers = {
        "Authorization": f"Bearer {key}",
        "Accept": "application/json",
        "Content-Type": "application/json",
    }
    if provider == ProviderId.QWEN:
        headers["User-Agent"] = QWEN_USER_AGENT
    return headers


def normalize_base_url(url: str | None, default: str) -> str:
    if not url or not url.strip():
        return default.rstrip("/")
    return url.strip().rstrip("/")


def normalize_resource_url(raw: str | None, default: str) -> str:
    if raw is None:
        return default
    trimmed = raw.strip()
    if not trimmed:
        return default

    with_scheme = trimmed if trimmed.startswith("http") else f"https://{trimmed}"
    cleaned = with_scheme.rstrip("/")
    if cleaned.endswith(VERSIONED_SUFFIXES):
        return cleaned
    return f"{cleaned}/v1"
