"""Multi-provider text generation gateway with credential lifecycle and fallback."""

from .llm import (
    ChatMessage,
    FileCredentialStore,
    GatewayConfig,
    GenerationResult,
    ProviderGateway,
    ProviderId,
    create_gateway,
    extract_json,
)

__all__ = [
    "ChatMessage",
    "create_gateway",
    "extract_json",
    "FileCredentialStore",
    "GatewayConfig",
    "GenerationResult",
    "ProviderGateway",
    "ProviderId",
]
