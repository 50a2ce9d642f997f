import json
from pathlib import Path

import pytest

import provider_gateway.cli.credentials as credentials_cli
from provider_gateway.cli.credentials import run
from provider_gateway.llm.errors import OAuthFlowError
from provider_gateway.llm.models import DeviceAuthorizationSession, ProviderId, TokenBundle
from provider_gateway.llm.token_store import FileCredentialStore


def test_set_key_status_and_clear_key(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "credentials.json"

    assert run(["--credentials-path", str(path), "set-key", "--provider", "zai", "--key", "zai-key"]) == 0
    assert json.loads(path.read_text(encoding="utf-8")) == {"zai": {"api_key": "zai-key"}}
    capsys.readouterr()

    assert run(["--credentials-path", str(path), "status"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["zai"] == {"authenticated": True, "api_key": True, "oauth": False, "expires_at": None}
    assert status["qwen"]["authenticated"] is False

    assert run(["--credentials-path", str(path), "clear-key", "--provider", "zai"]) == 0
    assert json.loads(path.read_text(encoding="utf-8")) == {}


def test_status_reads_env_fallback_key(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("OLLAMA_API_KEY", "env-key")
    monkeypatch.setenv("PROVIDER_GATEWAY_CREDENTIALS_PATH", str(tmp_path / "credentials.json"))

    assert run(["status"]) == 0

    status = json.loads(capsys.readouterr().out)
    assert status["ollama"]["authenticated"] is True


def test_logout_removes_token(tmp_path: Path) -> None:
    path = tmp_path / "credentials.json"
    store = FileCredentialStore(str(path))
    store.set_api_key(ProviderId.QWEN, "qwen-key")
    store.set_token(ProviderId.QWEN, TokenBundle(access_token="qwen-access"))

    assert run(["--credentials-path", str(path), "logout", "--provider", "qwen"]) == 0

    assert json.loads(path.read_text(encoding="utf-8")) == {"qwen": {"api_key": "qwen-key"}}


def test_login_runs_device_flow(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    opened: list[str] = []

    class FakeFlow:
        def __init__(self, config, store, *, request_timeout_seconds) -> None:
            self.config = config
            self.store = store

        async def sign_in(self, on_verification):
            on_verification(
                DeviceAuthorizationSession(
                    provider=ProviderId.QWEN,
                    device_code="device-123",
                    user_code="ABCD-EFGH",
                    verification_uri="https://chat.qwen.ai/authorize",
                    verification_uri_complete="https://chat.qwen.ai/authorize?user_code=ABCD-EFGH",
                    expires_at=0,
                    poll_interval_ms=2000,
                )
            )
            token = TokenBundle(access_token="qwen-access", resource_url="portal.qwen.ai")
            self.store.set_token(ProviderId.QWEN, token)
            return token

    monkeypatch.setattr(credentials_cli, "DeviceAuthorizationFlow", FakeFlow)
    monkeypatch.setattr(credentials_cli.webbrowser, "open", lambda url: opened.append(url) or True)
    path = tmp_path / "credentials.json"

    assert run(["--credentials-path", str(path), "login", "--provider", "qwen"]) == 0

    out = capsys.readouterr().out
    assert "User code: ABCD-EFGH" in out
    assert "Resource URL: portal.qwen.ai" in out
    assert opened == ["https://chat.qwen.ai/authorize?user_code=ABCD-EFGH"]
    assert json.loads(path.read_text(encoding="utf-8"))["qwen"]["token"]["access_token"] == "qwen-access"


def test_login_rejects_provider_without_oauth(tmp_path: Path) -> None:
    with pytest.raises(OAuthFlowError, match="use set-key"):
        run(["--credentials-path", str(tmp_path / "credentials.json"), "login", "--provider", "ollama"])


def test_missing_subcommand_exits() -> None:
    with pytest.raises(SystemExit):
        run([])
