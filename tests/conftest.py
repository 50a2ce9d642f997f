from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from provider_gateway.llm.token_store import FileCredentialStore


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in (
        "QWEN_API_KEY",
        "OLLAMA_API_KEY",
        "ZAI_API_KEY",
        "PROVIDER_GATEWAY_CREDENTIALS_PATH",
        "PROVIDER_GATEWAY_ALLOW_WORKSPACE_PATH",
        "PROVIDER_GATEWAY_PREFERRED_PROVIDER",
        "PROVIDER_GATEWAY_FALLBACK_ORDER",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PROVIDER_GATEWAY_WORKSPACE_ROOT", str(tmp_path / "workspace"))


@pytest.fixture
def credential_store(tmp_path: Path) -> FileCredentialStore:
    return FileCredentialStore(str(tmp_path / "credentials.json"))
