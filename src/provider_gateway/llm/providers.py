from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

import httpx

from provider_gateway.hooks.observability import EventLogger
from provider_gateway.hooks.security import mask_sensitive_text

from .errors import (
    AuthenticationExpiredError,
    AuthenticationMissingError,
    GatewayError,
    ProviderRequestFailedError,
)
from .models import ChatMessage, GatewayConfig, GenerationResult, ProviderId, TokenBundle
from .provider_auth import build_provider_auth_headers, normalize_base_url, normalize_resource_url
from .streaming import (
    DeltaExtractor,
    FrameDialect,
    StreamNormalizer,
    ndjson_message_content,
    sse_delta_content,
)
from .token_refresh import TokenRefreshPolicy
from .token_store import FileCredentialStore

log = logging.getLogger("provider_gateway.providers")

DEFAULT_QWEN_ENDPOINT = "https://dashscope-intl.aliyuncs.com/compatible-mode/v1"
DEFAULT_OLLAMA_ENDPOINT = "https://ollama.com"
DEFAULT_ZAI_ENDPOINT = "https://api.z.ai/api/paas/v4"
DEFAULT_ZAI_CODING_ENDPOINT = "https://api.z.ai/api/coding/paas/v4"

QWEN_MODELS = ["coder-model"]
OLLAMA_MODELS = [
    "gpt-oss:120b",
    "llama3.1:latest",
    "llama3.1:70b",
    "llama3.1:8b",
    "gemma3:12b",
    "gemma3:27b",
    "deepseek-r1:70b",
    "deepseek-r1:32b",
    "deepseek-r1:8b",
    "qwen3:32b",
    "qwen3:14b",
    "mistral:7b",
    "codellama:34b",
    "phi3:14b",
]
ZAI_MODELS = ["glm-4.7", "glm-4.6", "glm-4.5", "glm-4.5-air", "glm-4-flash", "glm-4-flashx"]

BODY_PREVIEW_CHARS = 300


def _dig(payload: Any, *path: str | int) -> Any:
    current = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[key] if isinstance(key, int) else current.get(key)
    return current


def map_qwen_response(payload: Any) -> str | None:
    content = _dig(payload, "choices", 0, "message", "content")
    return content if isinstance(content, str) else None


def map_ollama_response(payload: Any) -> str | None:
    for path in (("message", "content"), ("choices", 0, "message", "content")):
        content = _dig(payload, *path)
        if isinstance(content, str) and content:
            return content
    return None


def map_zai_response(payload: Any) -> str | None:
    for path in (
        ("choices", 0, "message", "content"),
        ("output", "choices", 0, "message", "content"),
    ):
        content = _dig(payload, *path)
        if isinstance(content, str):
            return content
    return None


def read_json_response(response: httpx.Response, label: str) -> Any:
    text = response.text
    if response.status_code >= 400:
        raise ProviderRequestFailedError(
            f"{label} request failed (HTTP {response.status_code}): {text[:BODY_PREVIEW_CHARS]}",
            status_code=response.status_code,
            body_preview=text[:BODY_PREVIEW_CHARS],
        )
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        content_type = response.headers.get("content-type") or "unknown content-type"
        raise ProviderRequestFailedError(
            f"{label} returned non-JSON ({content_type}, HTTP {response.status_code})",
            status_code=response.status_code,
            body_preview=text[:BODY_PREVIEW_CHARS],
        ) from exc


def _error_message(exc: Exception) -> str:
    return mask_sensitive_text(str(exc)) or exc.__class__.__name__


class ProviderClient(ABC):
    """Capability interface every provider variant implements."""

    provider: ProviderId
    display_name: str
    default_model: str
    fallback_models: list[str]
    dialect: FrameDialect
    supports_streaming = True

    def __init__(
        self,
        *,
        store: FileCredentialStore,
        refresh_policy: TokenRefreshPolicy | None = None,
        request_timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self.store = store
        self.refresh_policy = refresh_policy
        self.request_timeout_seconds = request_timeout_seconds
        self.transport = transport
        self.logger = logger or EventLogger()

    def is_authenticated(self) -> bool:
        return self.store.is_authenticated(self.provider)

    @abstractmethod
    def completions_url(self, token: TokenBundle | None, options: dict[str, Any]) -> str:
        raise NotImplementedError

    @abstractmethod
    def map_response(self, payload: Any) -> str | None:
        raise NotImplementedError

    @property
    def extract_delta(self) -> DeltaExtractor:
        return sse_delta_content

    async def list_models(self) -> list[str]:
        return list(self.fallback_models)

    async def generate(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        *,
        options: dict[str, Any] | None = None,
    ) -> GenerationResult:
        target_model = model or self.default_model
        try:
            secret, token = await self._resolve_credentials()
            url = self.completions_url(token, options or {})
            async with self._client() as client:
                response = await client.post(
                    url,
                    headers=build_provider_auth_headers(provider=self.provider, secret=secret),
                    json=self._request_body(messages, target_model, stream=False),
                )
            payload = read_json_response(response, self.display_name)
        except (GatewayError, httpx.HTTPError) as exc:
            log.warning("%s completion failed: %s", self.display_name, _error_message(exc))
            return GenerationResult.failed(_error_message(exc))

        text = self.map_response(payload)
        if text is None:
            return GenerationResult.failed("Unexpected response format")
        return GenerationResult.succeeded(text)

    async def generate_streaming(
        self,
        messages: list[ChatMessage],
        on_chunk: Callable[[str], None],
        abort: asyncio.Event | None = None,
        model: str | None = None,
        *,
        options: dict[str, Any] | None = None,
    ) -> GenerationResult:
        target_model = model or self.default_model
        normalizer = StreamNormalizer(
            self.dialect,
            self.extract_delta,
            provider=self.provider.value,
            logger=self.logger,
        )
        try:
            secret, token = await self._resolve_credentials()
            url = self.completions_url(token, options or {})
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    url,
                    headers=build_provider_auth_headers(provider=self.provider, secret=secret),
                    json=self._request_body(messages, target_model, stream=True),
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise ProviderRequestFailedError(
                            f"{self.display_name} stream failed (HTTP {response.status_code}): "
                            f"{body[:BODY_PREVIEW_CHARS]}",
                            status_code=response.status_code,
                            body_preview=body[:BODY_PREVIEW_CHARS],
                        )
                    outcome = await normalizer.pump(response.aiter_bytes(), on_chunk, abort)
        except (GatewayError, httpx.HTTPError) as exc:
            log.warning("%s stream failed: %s", self.display_name, _error_message(exc))
            return GenerationResult.failed(_error_message(exc))

        if outcome.aborted:
            return GenerationResult.failed("Generation aborted")
        return GenerationResult.succeeded()

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.request_timeout_seconds)
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    @staticmethod
    def _request_body(messages: list[ChatMessage], model: str, *, stream: bool) -> dict[str, Any]:
        return {
            "model": model,
            "messages": [message.model_dump() for message in messages],
            "stream": stream,
        }

    async def _resolve_credentials(self) -> tuple[str, TokenBundle | None]:
        had_token = self.store.get_token(self.provider) is not None
        token = None
        if self.refresh_policy is not None:
            token = await self.refresh_policy.ensure_valid(self.provider)
        elif had_token:
            token = self.store.get_token(self.provider)
        if token is not None and token.access_token:
            return token.access_token, token

        api_key = self.store.get_api_key(self.provider)
        if api_key:
            return api_key, None
        if had_token:
            raise AuthenticationExpiredError(
                f"{self.display_name} session expired. Please sign in again."
            )
        raise AuthenticationMissingError(
            f"Please configure a {self.display_name} API key or authenticate via OAuth."
        )

    async def _fetch_model_names(self, url: str) -> list[str]:
        secret, _token = await self._resolve_credentials()
        headers = build_provider_auth_headers(provider=self.provider, secret=secret)
        async with self._client() as client:
            response = await client.get(url, headers=headers)
        payload = read_json_response(response, self.display_name)
        return _model_names(payload)


def _model_names(payload: Any) -> list[str]:
    if isinstance(payload, list):
        entries = payload
    elif isinstance(payload, dict):
        entries = next(
            (payload[key] for key in ("models", "data") if isinstance(payload.get(key), list)),
            [],
        )
    else:
        entries = []

    names: list[str] = []
    for entry in entries:
        if isinstance(entry, str) and entry:
            names.append(entry)
            continue
        if not isinstance(entry, dict):
            continue
        name = entry.get("name") or entry.get("model") or entry.get("id")
        if isinstance(name, str) and name:
            names.append(name)
    return names


class QwenClient(ProviderClient):
    provider = ProviderId.QWEN
    display_name = "Qwen"
    default_model = "coder-model"
    fallback_models = QWEN_MODELS
    dialect = FrameDialect.SSE

    def __init__(self, *, endpoint: str = DEFAULT_QWEN_ENDPOINT, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.endpoint = normalize_base_url(endpoint, DEFAULT_QWEN_ENDPOINT)

    def effective_endpoint(self, token: TokenBundle | None) -> str:
        if token is not None and token.resource_url:
            return normalize_resource_url(token.resource_url, self.endpoint)
        return self.endpoint

    def completions_url(self, token: TokenBundle | None, options: dict[str, Any]) -> str:
        return f"{self.effective_endpoint(token)}/chat/completions"

    def map_response(self, payload: Any) -> str | None:
        return map_qwen_response(payload)


class OllamaClient(ProviderClient):
    provider = ProviderId.OLLAMA
    display_name = "Ollama"
    default_model = "gpt-oss:120b"
    fallback_models = OLLAMA_MODELS
    dialect = FrameDialect.NDJSON

    def __init__(self, *, endpoint: str = DEFAULT_OLLAMA_ENDPOINT, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.endpoint = normalize_base_url(endpoint, DEFAULT_OLLAMA_ENDPOINT)

    def completions_url(self, token: TokenBundle | None, options: dict[str, Any]) -> str:
        return f"{self.endpoint}/api/chat"

    def map_response(self, payload: Any) -> str | None:
        return map_ollama_response(payload)

    @property
    def extract_delta(self) -> DeltaExtractor:
        return ndjson_message_content

    async def list_models(self) -> list[str]:
        for url in (f"{self.endpoint}/api/v1/models", f"{self.endpoint}/api/tags"):
            try:
                names = await self._fetch_model_names(url)
            except (GatewayError, httpx.HTTPError) as exc:
                log.warning("Ollama model listing via %s failed: %s", url, _error_message(exc))
                continue
            if names:
                return names
        return list(self.fallback_models)


class ZaiClient(ProviderClient):
    provider = ProviderId.ZAI
    display_name = "Z.AI"
    default_model = "glm-4.7"
    fallback_models = ZAI_MODELS
    dialect = FrameDialect.SSE

    def __init__(
        self,
        *,
        endpoint: str = DEFAULT_ZAI_ENDPOINT,
        coding_endpoint: str = DEFAULT_ZAI_CODING_ENDPOINT,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.endpoint = normalize_base_url(endpoint, DEFAULT_ZAI_ENDPOINT)
        self.coding_endpoint = normalize_base_url(coding_endpoint, DEFAULT_ZAI_CODING_ENDPOINT)

    def completions_url(self, token: TokenBundle | None, options: dict[str, Any]) -> str:
        base = self.coding_endpoint if options.get("coding") else self.endpoint
        return f"{base}/chat/completions"

    def map_response(self, payload: Any) -> str | None:
        return map_zai_response(payload)

    async def list_models(self) -> list[str]:
        if not self.is_authenticated():
            return list(self.fallback_models)
        try:
            names = await self._fetch_model_names(f"{self.endpoint}/models")
        except (GatewayError, httpx.HTTPError) as exc:
            log.warning("Z.AI model listing failed: %s", _error_message(exc))
            return list(self.fallback_models)
        return names or list(self.fallback_models)


def build_provider_clients(
    config: GatewayConfig,
    *,
    store: FileCredentialStore,
    refresh_policy: TokenRefreshPolicy | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    logger: EventLogger | None = None,
) -> dict[ProviderId, ProviderClient]:
    shared: dict[str, Any] = {
        "store": store,
        "request_timeout_seconds": config.request_timeout_seconds,
        "transport": transport,
        "logger": logger,
    }
    return {
        ProviderId.QWEN: QwenClient(
            endpoint=config.qwen_endpoint,
            refresh_policy=refresh_policy,
            **shared,
        ),
        ProviderId.OLLAMA: OllamaClient(endpoint=config.ollama_endpoint, **shared),
        ProviderId.ZAI: ZaiClient(
            endpoint=config.zai_endpoint,
            coding_endpoint=config.zai_coding_endpoint,
            **shared,
        ),
    }
