"""Provider gateway: credentials, device sign-in, streaming and fallback routing."""

from .config import default_oauth_configs, load_gateway_config, qwen_oauth_config
from .device_flow import DeviceAuthorizationFlow
from .errors import (
    AuthenticationExpiredError,
    AuthenticationMissingError,
    DeviceAuthorizationError,
    DeviceFlowExpiredError,
    DeviceFlowRejectedError,
    ExtractionFailedError,
    GatewayError,
    OAuthFlowError,
    ProviderRequestFailedError,
    StreamFrameMalformedError,
)
from .extractor import extract_json
from .gateway import ProviderGateway, UnknownOperationError, create_gateway
from .models import (
    ChatMessage,
    CredentialRecord,
    DeviceAuthorizationSession,
    DeviceFlowState,
    GatewayConfig,
    GenerationResult,
    OAuthProviderConfig,
    ProviderId,
    TokenBundle,
)
from .provider_auth import build_provider_auth_headers, normalize_resource_url
from .providers import OllamaClient, ProviderClient, QwenClient, ZaiClient
from .router import ProviderRouter
from .streaming import FrameDialect, StreamNormalizer, StreamOutcome
from .token_refresh import TokenRefreshPolicy
from .token_store import FileCredentialStore, default_credentials_path

__all__ = [
    "AuthenticationExpiredError",
    "AuthenticationMissingError",
    "build_provider_auth_headers",
    "ChatMessage",
    "create_gateway",
    "CredentialRecord",
    "default_credentials_path",
    "default_oauth_configs",
    "DeviceAuthorizationError",
    "DeviceAuthorizationFlow",
    "DeviceAuthorizationSession",
    "DeviceFlowExpiredError",
    "DeviceFlowRejectedError",
    "DeviceFlowState",
    "extract_json",
    "ExtractionFailedError",
    "FileCredentialStore",
    "FrameDialect",
    "GatewayConfig",
    "GatewayError",
    "GenerationResult",
    "load_gateway_config",
    "normalize_resource_url",
    "OAuthFlowError",
    "OAuthProviderConfig",
    "OllamaClient",
    "ProviderClient",
    "ProviderGateway",
    "ProviderId",
    "ProviderRequestFailedError",
    "ProviderRouter",
    "qwen_oauth_config",
    "QwenClient",
    "StreamFrameMalformedError",
    "StreamNormalizer",
    "StreamOutcome",
    "TokenBundle",
    "TokenRefreshPolicy",
    "UnknownOperationError",
    "ZaiClient",
]
