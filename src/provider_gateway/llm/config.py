from __future__ import annotations

import os

from .models import GatewayConfig, OAuthProviderConfig, ProviderId

ENV_PREFIX = "PROVIDER_GATEWAY_"

QWEN_OAUTH_DEFAULTS: dict[str, str] = {
    "DEVICE_CODE_URL": "https://chat.qwen.ai/api/v1/oauth2/device/code",
    "TOKEN_URL": "https://chat.qwen.ai/api/v1/oauth2/token",
    "USER_INFO_URL": "https://chat.qwen.ai/api/v1/user",
    "CLIENT_ID": "f0304373b74a44d2b584a3fb70ca9e56",
    "SCOPE": "openid profile email model.completion",
}

API_KEY_ENV_VARS: dict[ProviderId, str] = {
    ProviderId.QWEN: "QWEN_API_KEY",
    ProviderId.OLLAMA: "OLLAMA_API_KEY",
    ProviderId.ZAI: "ZAI_API_KEY",
}


def _env_text(env: dict[str, str], name: str) -> str | None:
    value = env.get(f"{ENV_PREFIX}{name}")
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _parse_provider_list(raw: str) -> list[ProviderId]:
    normalized = raw.replace(",", " ")
    return [ProviderId(item.strip().lower()) for item in normalized.split() if item.strip()]


def load_gateway_config(environ: dict[str, str] | None = None) -> GatewayConfig:
    env = environ if environ is not None else dict(os.environ)
    values: dict[str, object] = {}

    preferred = _env_text(env, "PREFERRED_PROVIDER")
    if preferred:
        values["preferred_provider"] = ProviderId(preferred.lower())
    fallback = _env_text(env, "FALLBACK_ORDER")
    if fallback:
        values["fallback_order"] = _parse_provider_list(fallback)
    timeout = _env_text(env, "REQUEST_TIMEOUT_SECONDS")
    if timeout:
        values["request_timeout_seconds"] = float(timeout)

    for field_name, env_name in (
        ("qwen_endpoint", "QWEN_ENDPOINT"),
        ("ollama_endpoint", "OLLAMA_ENDPOINT"),
        ("zai_endpoint", "ZAI_ENDPOINT"),
        ("zai_coding_endpoint", "ZAI_CODING_ENDPOINT"),
        ("credentials_path", "CREDENTIALS_PATH"),
    ):
        value = _env_text(env, env_name)
        if value:
            values[field_name] = value

    values["allow_workspace_credentials"] = _env_text(env, "ALLOW_WORKSPACE_PATH") == "1"
    values["env_api_keys"] = {
        provider: env[name].strip()
        for provider, name in API_KEY_ENV_VARS.items()
        if env.get(name, "").strip()
    }
    return GatewayConfig.model_validate(values)


def qwen_oauth_config(environ: dict[str, str] | None = None) -> OAuthProviderConfig:
    env = environ if environ is not None else dict(os.environ)

    def _resolve(name: str) -> str:
        return _env_text(env, f"QWEN_OAUTH_{name}") or QWEN_OAUTH_DEFAULTS[name]

    return OAuthProviderConfig(
        provider=ProviderId.QWEN,
        device_code_url=_resolve("DEVICE_CODE_URL"),
        token_url=_resolve("TOKEN_URL"),
        client_id=_resolve("CLIENT_ID"),
        scope=_resolve("SCOPE"),
        user_info_url=_resolve("USER_INFO_URL"),
    )


def default_oauth_configs(
    environ: dict[str, str] | None = None,
) -> dict[ProviderId, OAuthProviderConfig]:
    return {ProviderId.QWEN: qwen_oauth_config(environ)}
