from __future__ import annotations

from .models import GatewayConfig, ProviderId


class ProviderRouter:
    def __init__(self, config: GatewayConfig) -> None:
        self.config = config

    def build_candidates(self, explicit_provider: ProviderId | None = None) -> list[ProviderId]:
        if explicit_provider is not None:
            return [explicit_provider]

        candidates: list[ProviderId] = []
        for provider in [self.config.preferred_provider, *self.config.fallback_order]:
            if provider not in candidates:
                candidates.append(provider)
        return candidates
