from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from provider_gateway.hooks.observability import EventLogger
from provider_gateway.hooks.security import mask_sensitive_text

from .config import default_oauth_configs, load_gateway_config
from .device_flow import DeviceAuthorizationFlow
from .errors import OAuthFlowError
from .models import (
    ChatMessage,
    DeviceAuthorizationSession,
    GatewayConfig,
    GenerationResult,
    OAuthProviderConfig,
    ProviderId,
    TokenBundle,
)
from .providers import ProviderClient, build_provider_clients
from .router import ProviderRouter
from .token_refresh import TokenRefreshPolicy
from .token_store import FileCredentialStore

log = logging.getLogger("provider_gateway.gateway")

Operation = Callable[[ProviderClient], Awaitable[GenerationResult]]
OperationBuilder = Callable[[dict[str, Any]], list[ChatMessage]]

NO_PROVIDER_CONFIGURED = (
    "No AI provider is configured. Add an API key or sign in to one of: {providers}."
)


class UnknownOperationError(ValueError):
    pass


def coerce_provider(value: ProviderId | str | None) -> ProviderId | None:
    if value is None:
        return None
    try:
        return ProviderId(value)
    except ValueError:
        return None


def _provider_name(value: ProviderId | str) -> str:
    return value.value if isinstance(value, ProviderId) else str(value)


def build_chat_messages(args: dict[str, Any]) -> list[ChatMessage]:
    raw = args.get("messages")
    if not isinstance(raw, list) or not raw:
        raise ValueError("chat operation requires a non-empty 'messages' list")
    return [ChatMessage.model_validate(item) for item in raw]


def build_generate_messages(args: dict[str, Any]) -> list[ChatMessage]:
    prompt = args.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValueError("generate operation requires a non-empty 'prompt'")
    messages: list[ChatMessage] = []
    system = args.get("system")
    if isinstance(system, str) and system.strip():
        messages.append(ChatMessage(role="system", content=system))
    messages.append(ChatMessage(role="user", content=prompt))
    return messages


class ProviderGateway:
    """
    Single entry point for text generation across providers.
    Credential lifecycle lives in the store, refresh policy and device flows;
    the gateway only decides which provider to try next.
    """

    def __init__(
        self,
        *,
        clients: dict[ProviderId, ProviderClient],
        store: FileCredentialStore,
        config: GatewayConfig | None = None,
        oauth_flows: dict[ProviderId, DeviceAuthorizationFlow] | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self.clients = clients
        self.store = store
        self.config = config or GatewayConfig()
        self.router = ProviderRouter(self.config)
        self.oauth_flows = oauth_flows or {}
        self.logger = logger or EventLogger()
        self._operations: dict[str, OperationBuilder] = {
            "chat": build_chat_messages,
            "generate": build_generate_messages,
        }

    def register_operation(self, name: str, builder: OperationBuilder) -> None:
        if not name.strip():
            raise ValueError("operation name must not be empty")
        self._operations[name] = builder

    def operation_names(self) -> list[str]:
        return sorted(self._operations)

    def is_authenticated(self, provider: ProviderId | str) -> bool:
        resolved = coerce_provider(provider)
        client = self.clients.get(resolved) if resolved is not None else None
        if client is None:
            return False
        return client.is_authenticated()

    async def call_with_fallback(
        self,
        operation: Operation,
        candidates: list[ProviderId | str],
        *,
        stop_when: Callable[[], bool] | None = None,
    ) -> GenerationResult:
        last_error: str | None = None
        attempted = False

        for candidate in candidates:
            name = _provider_name(candidate)
            provider = coerce_provider(candidate)
            client = self.clients.get(provider) if provider is not None else None
            if client is None or not client.is_authenticated():
                self.logger.on_provider_call(name, "skipped")
                continue

            attempted = True
            self.logger.on_provider_call(name, "start")
            try:
                result = await operation(client)
            except Exception as exc:
                last_error = mask_sensitive_text(str(exc)) or exc.__class__.__name__
                log.warning("Provider %s raised: %s", name, last_error)
                self.logger.on_provider_call(name, "error", error=last_error)
            else:
                if result.success:
                    self.logger.on_provider_call(name, "success")
                    return result
                last_error = mask_sensitive_text(result.error or "Unknown error")
                log.warning("Provider %s failed: %s", name, last_error)
                self.logger.on_provider_call(name, "failure", error=last_error)

            if stop_when is not None and stop_when():
                return GenerationResult.failed(last_error or "Unknown error")

        if not attempted:
            names = ", ".join(_provider_name(candidate) for candidate in candidates)
            return GenerationResult.failed(NO_PROVIDER_CONFIGURED.format(providers=names))
        return GenerationResult.failed(f"All providers failed: {last_error}")

    async def invoke(
        self,
        operation_name: str,
        args: dict[str, Any],
        provider: ProviderId | str | None = None,
        model: str | None = None,
    ) -> GenerationResult:
        try:
            messages = self._build_messages(operation_name, args)
        except ValueError as exc:
            return GenerationResult.failed(str(exc))
        options = args.get("options") or {}

        async def operation(client: ProviderClient) -> GenerationResult:
            result = await client.generate(messages, model, options=options)
            if result.success and result.data is None:
                return GenerationResult.failed(f"{client.display_name} returned no content")
            return result

        return await self.call_with_fallback(operation, self._candidates(provider))

    async def invoke_streaming(
        self,
        operation_name: str,
        args: dict[str, Any],
        on_chunk: Callable[[str], None],
        abort: asyncio.Event | None = None,
        provider: ProviderId | str | None = None,
        model: str | None = None,
    ) -> GenerationResult:
        try:
            messages = self._build_messages(operation_name, args)
        except ValueError as exc:
            return GenerationResult.failed(str(exc))
        options = args.get("options") or {}
        delivered = 0

        def counting_chunk(text: str) -> None:
            nonlocal delivered
            delivered += 1
            on_chunk(text)

        async def operation(client: ProviderClient) -> GenerationResult:
            if client.supports_streaming:
                return await client.generate_streaming(
                    messages, counting_chunk, abort, model, options=options
                )
            result = await client.generate(messages, model, options=options)
            if not result.success:
                return result
            if not result.data:
                return GenerationResult.failed(f"{client.display_name} returned no content")
            if abort is not None and abort.is_set():
                return GenerationResult.failed("Generation aborted")
            counting_chunk(result.data)
            return GenerationResult.succeeded()

        def stop_when() -> bool:
            # a partially delivered stream must not be replayed by another provider
            return delivered > 0 or (abort is not None and abort.is_set())

        result = await self.call_with_fallback(
            operation,
            self._candidates(provider),
            stop_when=stop_when,
        )
        return GenerationResult(success=result.success, error=result.error)

    async def list_models(self, provider: ProviderId | str | None = None) -> list[str]:
        target = self.config.preferred_provider if provider is None else coerce_provider(provider)
        client = self.clients.get(target) if target is not None else None
        if client is None:
            return []
        return await client.list_models()

    def set_api_key(self, provider: ProviderId, api_key: str) -> None:
        self.store.set_api_key(provider, api_key)

    def clear_api_key(self, provider: ProviderId) -> None:
        self.store.clear_api_key(provider)

    async def sign_in(
        self,
        provider: ProviderId,
        on_verification: Callable[[DeviceAuthorizationSession], None] | None = None,
    ) -> TokenBundle:
        return await self._oauth_flow(provider).sign_in(on_verification)

    def sign_out(self, provider: ProviderId) -> None:
        flow = self.oauth_flows.get(provider)
        if flow is not None:
            flow.sign_out()
            return
        self.store.clear_token(provider)

    def _oauth_flow(self, provider: ProviderId) -> DeviceAuthorizationFlow:
        flow = self.oauth_flows.get(provider)
        if flow is None:
            raise OAuthFlowError(f"{provider.value} does not support OAuth sign-in")
        return flow

    def _candidates(self, provider: ProviderId | str | None) -> list[ProviderId | str]:
        if provider is None:
            return list(self.router.build_candidates())
        # unknown ids stay in the list and are reported as skipped
        return [coerce_provider(provider) or provider]

    def _build_messages(self, operation_name: str, args: dict[str, Any]) -> list[ChatMessage]:
        builder = self._operations.get(operation_name)
        if builder is None:
            raise UnknownOperationError(f"Unknown operation: {operation_name}")
        return builder(args)


def create_gateway(
    config: GatewayConfig | None = None,
    *,
    store: FileCredentialStore | None = None,
    oauth_configs: dict[ProviderId, OAuthProviderConfig] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    logger: EventLogger | None = None,
) -> ProviderGateway:
    resolved = config or load_gateway_config()
    event_logger = logger or EventLogger()
    credential_store = store or FileCredentialStore(
        resolved.credentials_path,
        allow_workspace_path=resolved.allow_workspace_credentials,
        fallback_api_keys=resolved.env_api_keys,
    )
    oauth = oauth_configs if oauth_configs is not None else default_oauth_configs()
    refresh_policy = TokenRefreshPolicy(
        store=credential_store,
        oauth_configs=oauth,
        skew_ms=resolved.token_expiry_skew_seconds * 1000,
        transport=transport,
        logger=event_logger,
    )
    clients = build_provider_clients(
        resolved,
        store=credential_store,
        refresh_policy=refresh_policy,
        transport=transport,
        logger=event_logger,
    )
    flows = {
        provider: DeviceAuthorizationFlow(
            provider_config,
            credential_store,
            transport=transport,
            logger=event_logger,
        )
        for provider, provider_config in oauth.items()
    }
    return ProviderGateway(
        clients=clients,
        store=credential_store,
        config=resolved,
        oauth_flows=flows,
        logger=event_logger,
    )
