from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

TOKEN_EXPIRY_SKEW_MS = 60_000
QWEN_RESOURCE_SUFFIX = "/compatible-mode/v1"


def now_ms() -> int:
    return int(time.time() * 1000)


class ProviderId(str, Enum):
    QWEN = "qwen"
    OLLAMA = "ollama"
    ZAI = "zai"


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class TokenBundle(BaseModel):
    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None
    resource_url: str | None = None

    def is_expired(self, *, now: int | None = None, skew_ms: int = TOKEN_EXPIRY_SKEW_MS) -> bool:
        if self.expires_at is None:
            return False
        current = now_ms() if now is None else now
        return current >= self.expires_at - skew_ms

    @classmethod
    def from_token_response(
        cls,
        payload: dict[str, Any],
        *,
        previous_refresh_token: str | None = None,
        previous_resource_url: str | None = None,
        now: int | None = None,
    ) -> "TokenBundle":
        issued_at = now_ms() if now is None else now
        expires_in = payload.get("expires_in")
        expires_at = issued_at + int(expires_in) * 1000 if expires_in else None
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            expires_at=expires_at,
            resource_url=_resource_url_from_payload(payload) or previous_resource_url,
        )


def _resource_url_from_payload(payload: dict[str, Any]) -> str | None:
    for key in ("resource_url", "endpoint"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    server = payload.get("resource_server")
    if isinstance(server, str) and server.strip():
        return f"https://{server.strip()}{QWEN_RESOURCE_SUFFIX}"
    return None


class CredentialRecord(BaseModel):
    api_key: str | None = None
    token: TokenBundle | None = None

    @property
    def is_empty(self) -> bool:
        return not self.api_key and self.token is None

    @property
    def is_authenticated(self) -> bool:
        if self.api_key and self.api_key.strip():
            return True
        return bool(self.token and self.token.access_token)


class OAuthProviderConfig(BaseModel):
    provider: ProviderId
    device_code_url: str
    token_url: str
    client_id: str
    scope: str = ""
    user_info_url: str | None = None


class DeviceFlowState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    AWAITING_USER = "awaiting_user"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass
class DeviceAuthorizationSession:
    provider: ProviderId
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_at: int
    poll_interval_ms: int


class GenerationResult(BaseModel):
    success: bool
    data: str | None = None
    error: str | None = None

    @model_validator(mode="after")
    def validate_outcome(self) -> "GenerationResult":
        if not self.success and not self.error:
            raise ValueError("failed result requires an error message")
        return self

    @classmethod
    def succeeded(cls, data: str | None = None) -> "GenerationResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str) -> "GenerationResult":
        return cls(success=False, error=error or "Unknown error")


class GatewayConfig(BaseModel):
    preferred_provider: ProviderId = ProviderId.OLLAMA
    fallback_order: list[ProviderId] = Field(
        default_factory=lambda: [ProviderId.QWEN, ProviderId.OLLAMA, ProviderId.ZAI]
    )
    request_timeout_seconds: float = 60.0
    token_expiry_skew_seconds: int = 60
    qwen_endpoint: str = "https://dashscope-intl.aliyuncs.com/compatible-mode/v1"
    ollama_endpoint: str = "https://ollama.com"
    zai_endpoint: str = "https://api.z.ai/api/paas/v4"
    zai_coding_endpoint: str = "https://api.z.ai/api/coding/paas/v4"
    credentials_path: str | None = None
    allow_workspace_credentials: bool = False
    env_api_keys: dict[ProviderId, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_gateway_config(self) -> "GatewayConfig":
        if not self.fallback_order:
            raise ValueError("fallback_order must not be empty")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        if self.token_expiry_skew_seconds < 0:
            raise ValueError("token_expiry_skew_seconds must be >= 0")
        return self
