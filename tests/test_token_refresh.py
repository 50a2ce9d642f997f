import asyncio
from urllib.parse import parse_qs

import httpx

from provider_gateway.hooks.observability import EventLogger
from provider_gateway.llm.config import qwen_oauth_config
from provider_gateway.llm.models import ProviderId, TokenBundle
from provider_gateway.llm.token_refresh import TokenRefreshPolicy
from provider_gateway.llm.token_store import FileCredentialStore

NOW = 1_800_000_000_000


def _policy(
    store: FileCredentialStore,
    handler,
    *,
    logger: EventLogger | None = None,
) -> TokenRefreshPolicy:
    return TokenRefreshPolicy(
        store=store,
        oauth_configs={ProviderId.QWEN: qwen_oauth_config({})},
        clock=lambda: NOW,
        transport=httpx.MockTransport(handler),
        logger=logger,
    )


def _unexpected(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request: {request.url}")


def test_ensure_valid_returns_none_without_token(credential_store: FileCredentialStore) -> None:
    policy = _policy(credential_store, _unexpected)

    assert asyncio.run(policy.ensure_valid(ProviderId.QWEN)) is None


def test_token_expiring_in_61_seconds_is_used_unchanged(credential_store: FileCredentialStore) -> None:
    token = TokenBundle(access_token="fresh", refresh_token="r", expires_at=NOW + 61_000)
    credential_store.set_token(ProviderId.QWEN, token)
    policy = _policy(credential_store, _unexpected)

    result = asyncio.run(policy.ensure_valid(ProviderId.QWEN))

    assert result == token


def test_token_expiring_in_59_seconds_is_refreshed(credential_store: FileCredentialStore) -> None:
    credential_store.set_token(
        ProviderId.QWEN,
        TokenBundle(
            access_token="old",
            refresh_token="refresh-1",
            expires_at=NOW + 59_000,
            resource_url="portal.qwen.ai",
        ),
    )
    calls: list[dict[str, list[str]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://chat.qwen.ai/api/v1/oauth2/token"
        calls.append(parse_qs(request.content.decode("utf-8")))
        return httpx.Response(200, json={"access_token": "new", "expires_in": 3600})

    logger = EventLogger()
    policy = _policy(credential_store, handler, logger=logger)

    result = asyncio.run(policy.ensure_valid(ProviderId.QWEN))

    assert result is not None
    assert result.access_token == "new"
    assert result.refresh_token == "refresh-1"
    assert result.resource_url == "portal.qwen.ai"
    assert result.expires_at == NOW + 3_600_000
    assert calls == [
        {
            "grant_type": ["refresh_token"],
            "refresh_token": ["refresh-1"],
            "client_id": ["f0304373b74a44d2b584a3fb70ca9e56"],
        }
    ]
    assert credential_store.get_token(ProviderId.QWEN) == result
    assert [event.name for event in logger.list_events("auth")] == ["token_refreshed"]


def test_expired_token_without_refresh_token_is_cleared(credential_store: FileCredentialStore) -> None:
    credential_store.set_api_key(ProviderId.QWEN, "qwen-key")
    credential_store.set_token(ProviderId.QWEN, TokenBundle(access_token="old", expires_at=NOW - 1))
    policy = _policy(credential_store, _unexpected)

    assert asyncio.run(policy.ensure_valid(ProviderId.QWEN)) is None
    assert credential_store.get_token(ProviderId.QWEN) is None
    assert credential_store.get_api_key(ProviderId.QWEN) == "qwen-key"


def test_failed_refresh_clears_token_without_retry(credential_store: FileCredentialStore) -> None:
    credential_store.set_token(
        ProviderId.QWEN,
        TokenBundle(access_token="old", refresh_token="refresh-1", expires_at=NOW),
    )
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return httpx.Response(400, json={"error": "invalid_grant"})

    logger = EventLogger()
    policy = _policy(credential_store, handler, logger=logger)

    assert asyncio.run(policy.ensure_valid(ProviderId.QWEN)) is None
    assert attempts == 1
    assert credential_store.get_token(ProviderId.QWEN) is None
    assert [event.name for event in logger.list_events("auth")] == ["token_cleared"]


def test_concurrent_refreshes_are_collapsed(credential_store: FileCredentialStore) -> None:
    credential_store.set_token(
        ProviderId.QWEN,
        TokenBundle(access_token="old", refresh_token="refresh-1", expires_at=NOW),
    )
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return httpx.Response(
            200,
            json={"access_token": f"new-{attempts}", "refresh_token": "refresh-2", "expires_in": 3600},
        )

    policy = _policy(credential_store, handler)

    async def _run() -> list[TokenBundle | None]:
        return await asyncio.gather(*(policy.ensure_valid(ProviderId.QWEN) for _ in range(3)))

    results = asyncio.run(_run())

    assert attempts == 1
    assert [token.access_token for token in results if token] == ["new-1", "new-1", "new-1"]
