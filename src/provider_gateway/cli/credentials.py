from __future__ import annotations

import argparse
import asyncio
import json
import webbrowser

from provider_gateway.llm.config import default_oauth_configs, load_gateway_config
from provider_gateway.llm.device_flow import DeviceAuthorizationFlow
from provider_gateway.llm.errors import OAuthFlowError
from provider_gateway.llm.models import DeviceAuthorizationSession, GatewayConfig, ProviderId
from provider_gateway.llm.token_store import FileCredentialStore

PROVIDER_CHOICES = [provider.value for provider in ProviderId]


def _open_store(args: argparse.Namespace, config: GatewayConfig) -> FileCredentialStore:
    return FileCredentialStore(
        args.credentials_path or config.credentials_path,
        allow_workspace_path=config.allow_workspace_credentials,
        fallback_api_keys=config.env_api_keys,
    )


def _print_verification(session: DeviceAuthorizationSession, *, open_browser: bool) -> None:
    print("Open the following URL and approve the sign-in request:")
    print(session.verification_uri_complete)
    print(f"User code: {session.user_code}")
    if open_browser:
        opened = webbrowser.open(session.verification_uri_complete)
        if not opened:
            print("Browser could not be opened automatically. Open URL manually.")


def _status_payload(store: FileCredentialStore) -> dict[str, dict[str, object]]:
    payload: dict[str, dict[str, object]] = {}
    for provider in ProviderId:
        token = store.get_token(provider)
        payload[provider.value] = {
            "authenticated": store.is_authenticated(provider),
            "api_key": bool(store.get_api_key(provider)),
            "oauth": token is not None,
            "expires_at": token.expires_at if token else None,
        }
    return payload


def _login(args: argparse.Namespace, store: FileCredentialStore) -> int:
    provider = ProviderId(args.provider)
    oauth_configs = default_oauth_configs()
    provider_config = oauth_configs.get(provider)
    if provider_config is None:
        raise OAuthFlowError(f"{provider.value} does not support OAuth sign-in; use set-key")

    flow = DeviceAuthorizationFlow(
        provider_config,
        store,
        request_timeout_seconds=args.http_timeout_seconds,
    )
    print(f"[1/3] Requesting device code for {provider.value} (PKCE)")
    token = asyncio.run(
        flow.sign_in(
            lambda session: _print_verification(session, open_browser=not args.no_browser)
        )
    )
    print("[2/3] Authorization approved")
    print(f"[3/3] Token saved to {store.path}")
    if token.resource_url:
        print(f"Resource URL: {token.resource_url}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage provider credentials (API keys and OAuth sign-in) for provider-gateway."
    )
    parser.add_argument(
        "--credentials-path",
        default=None,
        help="Override credential file path (default: ~/.config/provider_gateway/credentials.json).",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    login = subcommands.add_parser("login", help="Sign in with the OAuth device flow.")
    login.add_argument("--provider", default=ProviderId.QWEN.value, choices=PROVIDER_CHOICES)
    login.add_argument(
        "--no-browser",
        action="store_true",
        help="Do not auto-open browser. Print URL and user code only.",
    )
    login.add_argument(
        "--http-timeout-seconds",
        type=float,
        default=15.0,
        help="HTTP timeout seconds for device and token requests.",
    )

    logout = subcommands.add_parser("logout", help="Remove the stored OAuth token.")
    logout.add_argument("--provider", required=True, choices=PROVIDER_CHOICES)

    set_key = subcommands.add_parser("set-key", help="Store an API key for a provider.")
    set_key.add_argument("--provider", required=True, choices=PROVIDER_CHOICES)
    set_key.add_argument("--key", required=True, help="API key value.")

    clear_key = subcommands.add_parser("clear-key", help="Remove the stored API key.")
    clear_key.add_argument("--provider", required=True, choices=PROVIDER_CHOICES)

    subcommands.add_parser("status", help="Show authentication status per provider.")
    return parser


def run(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_gateway_config()
    store = _open_store(args, config)

    if args.command == "login":
        return _login(args, store)
    if args.command == "logout":
        store.clear_token(ProviderId(args.provider))
        print(f"Signed out: provider={args.provider}")
        return 0
    if args.command == "set-key":
        store.set_api_key(ProviderId(args.provider), args.key)
        print(f"API key saved: provider={args.provider}, path={store.path}")
        return 0
    if args.command == "clear-key":
        store.clear_api_key(ProviderId(args.provider))
        print(f"API key removed: provider={args.provider}")
        return 0

    print(json.dumps(_status_payload(store), ensure_ascii=True, indent=2))
    return 0


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
