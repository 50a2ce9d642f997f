from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import httpx

from provider_gateway.hooks.observability import EventLogger
from provider_gateway.hooks.security import mask_sensitive_text

from .errors import GatewayError, OAuthFlowError, ProviderRequestFailedError
from .models import TOKEN_EXPIRY_SKEW_MS, OAuthProviderConfig, ProviderId, TokenBundle, now_ms
from .provider_auth import build_oauth_headers
from .token_store import FileCredentialStore

log = logging.getLogger("provider_gateway.auth")


class TokenRefreshPolicy:
    """
    Keeps stored OAuth bundles usable:
    - valid bundle: returned untouched
    - expired with refresh token: exchanged once, persisted
    - expired without refresh token, or refresh failed: token cleared
    """

    def __init__(
        self,
        *,
        store: FileCredentialStore,
        oauth_configs: dict[ProviderId, OAuthProviderConfig],
        request_timeout_seconds: float = 15.0,
        skew_ms: int = TOKEN_EXPIRY_SKEW_MS,
        clock: Callable[[], int] = now_ms,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self.store = store
        self.oauth_configs = oauth_configs
        self.request_timeout_seconds = request_timeout_seconds
        self.skew_ms = skew_ms
        self.clock = clock
        self.transport = transport
        self.logger = logger or EventLogger()
        self._locks: dict[ProviderId, asyncio.Lock] = {}

    def is_expired(self, token: TokenBundle) -> bool:
        return token.is_expired(now=self.clock(), skew_ms=self.skew_ms)

    async def ensure_valid(self, provider: ProviderId) -> TokenBundle | None:
        token = self.store.get_token(provider)
        if token is None:
            return None
        if not self.is_expired(token):
            return token

        lock = self._locks.setdefault(provider, asyncio.Lock())
        async with lock:
            # a concurrent caller may already have refreshed or cleared it
            current = self.store.get_token(provider)
            if current is None:
                return None
            if not self.is_expired(current):
                return current
            if not current.refresh_token:
                self._clear(provider, reason="expired without refresh token")
                return None

            try:
                payload = await self._request_refresh(provider, current.refresh_token)
                refreshed = TokenBundle.from_token_response(
                    payload,
                    previous_refresh_token=current.refresh_token,
                    previous_resource_url=current.resource_url,
                    now=self.clock(),
                )
            except (GatewayError, httpx.HTTPError, KeyError, ValueError) as exc:
                self._clear(provider, reason=mask_sensitive_text(str(exc)))
                return None

            self.store.set_token(provider, refreshed)
            self.logger.on_auth(provider.value, "token_refreshed")
            return refreshed

    async def _request_refresh(self, provider: ProviderId, refresh_token: str) -> dict[str, Any]:
        config = self.oauth_configs.get(provider)
        if config is None:
            raise OAuthFlowError(f"provider config not found: {provider.value}")

        timeout = httpx.Timeout(self.request_timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            response = await client.post(
                config.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": config.client_id,
                },
                headers=build_oauth_headers("application/x-www-form-urlencoded"),
            )
        if response.status_code >= 400:
            raise ProviderRequestFailedError(
                f"token refresh failed ({response.status_code}): {response.text[:300]}",
                status_code=response.status_code,
                body_preview=response.text[:300],
            )
        payload = response.json()
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise OAuthFlowError("token refresh returned no access_token")
        return payload

    def _clear(self, provider: ProviderId, *, reason: str) -> None:
        log.warning("Clearing %s OAuth token: %s", provider.value, reason)
        self.store.clear_token(provider)
        self.logger.on_auth(provider.value, "token_cleared")
