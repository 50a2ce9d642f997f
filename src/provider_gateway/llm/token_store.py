from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from .models import CredentialRecord, ProviderId, TokenBundle

log = logging.getLogger("provider_gateway.credentials")


class FileCredentialStore:
    """Per-provider credentials (API key and/or OAuth token bundle) in one JSON blob.

    The file is read once, when the store is constructed. Every mutation
    rewrites the whole blob with owner-only permissions.
    """

    def __init__(
        self,
        path: str | None = None,
        *,
        workspace_root: str | None = None,
        allow_workspace_path: bool = False,
        fallback_api_keys: dict[ProviderId, str] | None = None,
    ) -> None:
        self.path = Path(path).expanduser().resolve() if path else default_credentials_path()
        workspace = Path(
            workspace_root or os.getenv("PROVIDER_GATEWAY_WORKSPACE_ROOT") or os.getcwd()
        ).expanduser().resolve()
        allow_workspace = allow_workspace_path or os.getenv(
            "PROVIDER_GATEWAY_ALLOW_WORKSPACE_PATH", "0"
        ) == "1"

        if not allow_workspace and self.path.is_relative_to(workspace):
            raise ValueError(
                f"Credential path must be outside workspace: {self.path} (workspace: {workspace})"
            )

        self.path.parent.mkdir(parents=True, exist_ok=True)
        _chmod_private(self.path.parent, 0o700)
        if self.path.exists():
            _chmod_private(self.path, 0o600)

        self.fallback_api_keys = {
            provider: key.strip()
            for provider, key in (fallback_api_keys or {}).items()
            if key and key.strip()
        }
        self._records: dict[ProviderId, CredentialRecord] = {}
        self.hydrated = False
        self.hydrate()

    def hydrate(self) -> None:
        if self.hydrated:
            return
        self._records = self._read_all()
        self.hydrated = True

    def _read_all(self) -> dict[ProviderId, CredentialRecord]:
        if not self.path.exists():
            return {}
        raw = self.path.read_text(encoding="utf-8").strip()
        if not raw:
            return {}
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Ignoring unreadable credential file at %s", self.path)
            return {}
        if not isinstance(payload, dict):
            log.warning("Ignoring credential file at %s: top-level value is not an object", self.path)
            return {}
        records: dict[ProviderId, CredentialRecord] = {}
        for key, data in payload.items():
            try:
                provider = ProviderId(key)
            except ValueError:
                continue
            try:
                records[provider] = CredentialRecord.model_validate(data)
            except ValidationError as exc:
                log.warning(
                    "Skipping invalid %s credential record in %s: %s",
                    provider.value,
                    self.path,
                    exc.errors()[0]["msg"],
                )
        return records

    def _write_all(self) -> None:
        payload = {
            provider.value: record.model_dump(mode="json", exclude_none=True)
            for provider, record in self._records.items()
        }
        self.path.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8")
        _chmod_private(self.path, 0o600)

    def get(self, provider: ProviderId) -> CredentialRecord | None:
        record = self._records.get(provider)
        fallback_key = self.fallback_api_keys.get(provider)
        if fallback_key and (record is None or not record.api_key):
            merged = record.model_copy() if record else CredentialRecord()
            merged.api_key = fallback_key
            return merged
        return record.model_copy() if record else None

    def set(self, provider: ProviderId, record: CredentialRecord) -> None:
        if record.is_empty:
            self.clear(provider)
            return
        self._records[provider] = record.model_copy(deep=True)
        self._write_all()

    def clear(self, provider: ProviderId) -> None:
        if self._records.pop(provider, None) is not None:
            self._write_all()

    def is_authenticated(self, provider: ProviderId) -> bool:
        record = self.get(provider)
        return bool(record and record.is_authenticated)

    def get_api_key(self, provider: ProviderId) -> str | None:
        record = self.get(provider)
        return record.api_key if record else None

    def set_api_key(self, provider: ProviderId, api_key: str) -> None:
        key = api_key.strip()
        if not key:
            raise ValueError(f"{provider.value} API key is empty")
        record = self._records.get(provider) or CredentialRecord()
        self.set(provider, record.model_copy(update={"api_key": key}))

    def clear_api_key(self, provider: ProviderId) -> None:
        record = self._records.get(provider)
        if record is None:
            return
        self.set(provider, record.model_copy(update={"api_key": None}))

    def get_token(self, provider: ProviderId) -> TokenBundle | None:
        record = self._records.get(provider)
        if record is None or record.token is None:
            return None
        return record.token.model_copy()

    def set_token(self, provider: ProviderId, token: TokenBundle) -> None:
        record = self._records.get(provider) or CredentialRecord()
        self.set(provider, record.model_copy(update={"token": token}))

    def clear_token(self, provider: ProviderId) -> None:
        record = self._records.get(provider)
        if record is None or record.token is None:
            return
        self.set(provider, record.model_copy(update={"token": None}))


def default_credentials_path() -> Path:
    explicit = os.getenv("PROVIDER_GATEWAY_CREDENTIALS_PATH")
    if explicit:
        return Path(explicit).expanduser().resolve()
    return (_real_user_home() / ".config" / "provider_gateway" / "credentials.json").resolve()


def _real_user_home() -> Path:
    if os.name == "nt":
        return Path.home()
    try:
        import pwd

        return Path(pwd.getpwuid(os.getuid()).pw_dir)
    except (ImportError, KeyError):
        return Path.home()


def _chmod_private(path: Path, mode: int) -> None:
    try:
        path.chmod(mode)
    except OSError:
        pass
