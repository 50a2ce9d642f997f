from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import math
import secrets
from typing import Any, Awaitable, Callable

import httpx

from provider_gateway.hooks.observability import EventLogger

from .errors import (
    DeviceAuthorizationError,
    DeviceFlowExpiredError,
    DeviceFlowRejectedError,
    OAuthFlowError,
)
from .models import (
    DeviceAuthorizationSession,
    DeviceFlowState,
    OAuthProviderConfig,
    ProviderId,
    TokenBundle,
    now_ms,
)
from .provider_auth import build_oauth_headers
from .token_store import FileCredentialStore

log = logging.getLogger("provider_gateway.auth")

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_POLL_INTERVAL_MS = 2000
MAX_POLL_INTERVAL_MS = 10_000
SLOW_DOWN_FACTOR = 1.5
ACTIVE_STATES = {DeviceFlowState.REQUESTING, DeviceFlowState.AWAITING_USER, DeviceFlowState.POLLING}


def _base64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    return _base64url(secrets.token_bytes(32))


def pkce_challenge(verifier: str) -> str:
    return _base64url(hashlib.sha256(verifier.encode("ascii")).digest())


def next_poll_interval(interval_ms: int) -> int:
    return min(math.ceil(interval_ms * SLOW_DOWN_FACTOR), MAX_POLL_INTERVAL_MS)


async def _sleep_ms(interval_ms: int) -> None:
    await asyncio.sleep(interval_ms / 1000)


class DeviceAuthorizationFlow:
    """
    OAuth device-code sign-in with PKCE for one provider:
    - request a device/user code pair with the S256 challenge
    - hand the verification URL to the caller
    - poll the token endpoint until approval, rejection or expiry
    - persist the resulting token bundle in the credential store
    """

    def __init__(
        self,
        config: OAuthProviderConfig,
        store: FileCredentialStore,
        *,
        request_timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[int], Awaitable[None]] = _sleep_ms,
        clock: Callable[[], int] = now_ms,
        logger: EventLogger | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.request_timeout_seconds = request_timeout_seconds
        self.transport = transport
        self.sleep = sleep
        self.clock = clock
        self.logger = logger or EventLogger()
        self.state = DeviceFlowState.IDLE
        self.session: DeviceAuthorizationSession | None = None

    @property
    def provider(self) -> ProviderId:
        return self.config.provider

    async def sign_in(
        self,
        on_verification: Callable[[DeviceAuthorizationSession], None] | None = None,
    ) -> TokenBundle:
        if self.state in ACTIVE_STATES:
            raise OAuthFlowError(f"sign-in already in progress for {self.provider.value}")

        self.state = DeviceFlowState.REQUESTING
        try:
            code_verifier = generate_code_verifier()
            code_challenge = pkce_challenge(code_verifier)
            timeout = httpx.Timeout(self.request_timeout_seconds)
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                session = await self._request_device_authorization(client, code_challenge)
                self.session = session
                self.state = DeviceFlowState.AWAITING_USER
                if on_verification is not None:
                    on_verification(session)
                self.state = DeviceFlowState.POLLING
                token = await self._poll_for_token(client, session, code_verifier)
        except DeviceFlowExpiredError:
            self.state = DeviceFlowState.EXPIRED
            self.session = None
            raise
        except BaseException:
            self.state = DeviceFlowState.FAILED
            self.session = None
            raise

        self.store.set_token(self.provider, token)
        self.state = DeviceFlowState.SUCCEEDED
        self.session = None
        self.logger.on_auth(self.provider.value, "signed_in")
        return token

    def sign_out(self) -> None:
        self.store.clear_token(self.provider)
        self.state = DeviceFlowState.IDLE
        self.logger.on_auth(self.provider.value, "signed_out")

    async def _request_device_authorization(
        self,
        client: httpx.AsyncClient,
        code_challenge: str,
    ) -> DeviceAuthorizationSession:
        try:
            response = await client.post(
                self.config.device_code_url,
                data={
                    "client_id": self.config.client_id,
                    "scope": self.config.scope,
                    "code_challenge": code_challenge,
                    "code_challenge_method": "S256",
                },
                headers=build_oauth_headers("application/x-www-form-urlencoded"),
            )
        except httpx.HTTPError as exc:
            raise DeviceAuthorizationError(f"device authorization failed: {exc}") from exc

        if response.status_code >= 400:
            raise DeviceAuthorizationError(
                f"device authorization failed ({response.status_code}): {response.text[:300]}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise DeviceAuthorizationError("device authorization returned non-JSON response") from exc

        try:
            interval = payload.get("interval")
            return DeviceAuthorizationSession(
                provider=self.provider,
                device_code=payload["device_code"],
                user_code=payload["user_code"],
                verification_uri=payload["verification_uri"],
                verification_uri_complete=(
                    payload.get("verification_uri_complete") or payload["verification_uri"]
                ),
                expires_at=self.clock() + int(payload["expires_in"]) * 1000,
                poll_interval_ms=int(interval) * 1000 if interval else DEFAULT_POLL_INTERVAL_MS,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DeviceAuthorizationError(
                f"device authorization response missing field: {exc}"
            ) from exc

    async def _poll_for_token(
        self,
        client: httpx.AsyncClient,
        session: DeviceAuthorizationSession,
        code_verifier: str,
    ) -> TokenBundle:
        interval_ms = session.poll_interval_ms
        while self.clock() < session.expires_at:
            payload = await self._poll_once(client, session.device_code, code_verifier)

            if payload.get("access_token"):
                return TokenBundle.from_token_response(payload, now=self.clock())

            error = payload.get("error")
            if error == "authorization_pending":
                await self.sleep(interval_ms)
                continue
            if error == "slow_down":
                interval_ms = next_poll_interval(interval_ms)
                session.poll_interval_ms = interval_ms
                await self.sleep(interval_ms)
                continue

            detail = payload.get("error_description") or error or "OAuth failed"
            raise DeviceFlowRejectedError(str(detail), error=error)

        raise DeviceFlowExpiredError(f"{self.provider.value} OAuth timed out")

    async def _poll_once(
        self,
        client: httpx.AsyncClient,
        device_code: str,
        code_verifier: str,
    ) -> dict[str, Any]:
        try:
            response = await client.post(
                self.config.token_url,
                data={
                    "grant_type": DEVICE_GRANT_TYPE,
                    "client_id": self.config.client_id,
                    "device_code": device_code,
                    "code_verifier": code_verifier,
                },
                headers=build_oauth_headers("application/x-www-form-urlencoded"),
            )
        except httpx.HTTPError as exc:
            raise OAuthFlowError(f"token polling failed: {exc}") from exc
        text = response.text
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            log.warning("Token poll returned non-JSON body (HTTP %s)", response.status_code)
            return {"error": text or "Unknown error from token endpoint"}
        if not isinstance(payload, dict):
            return {"error": "Unexpected token endpoint response"}
        return payload

    async def fetch_user_info(self) -> Any:
        token = self.store.get_token(self.provider)
        if token is None or not token.access_token:
            raise OAuthFlowError("Not authenticated")
        if not self.config.user_info_url:
            raise OAuthFlowError(f"user info endpoint not configured: {self.provider.value}")

        timeout = httpx.Timeout(self.request_timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            response = await client.get(
                self.config.user_info_url,
                headers={**build_oauth_headers(), "Authorization": f"Bearer {token.access_token}"},
            )
        if response.status_code >= 400:
            raise OAuthFlowError(
                f"failed to fetch user info ({response.status_code}): {response.text[:300]}"
            )
        return response.json()
