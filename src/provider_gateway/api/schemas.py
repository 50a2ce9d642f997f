from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from provider_gateway.llm.models import ProviderId


class GenerateRequest(BaseModel):
    operation: str = "generate"
    args: dict[str, Any] = Field(default_factory=dict)
    provider: ProviderId | None = None
    model: str | None = None


class GenerateResponse(BaseModel):
    success: bool
    data: str | None = None
    error: str | None = None


class ProviderStatusResponse(BaseModel):
    provider: ProviderId
    authenticated: bool
    has_api_key: bool
    has_oauth_token: bool
    supports_streaming: bool
    default_model: str
    models: list[str] = Field(default_factory=list)


class ProvidersResponse(BaseModel):
    preferred_provider: ProviderId
    fallback_order: list[ProviderId]
    providers: list[ProviderStatusResponse]


class ApiKeyRequest(BaseModel):
    api_key: str = Field(min_length=1)


class CredentialStatusResponse(BaseModel):
    provider: ProviderId
    authenticated: bool
