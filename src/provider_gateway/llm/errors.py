"""Error hierarchy for the provider gateway.

Provider clients turn these into failed ``GenerationResult`` values; only the
device authorization flow and the structured extractor let them escape to
callers.
"""

from __future__ import annotations


class GatewayError(RuntimeError):
    """Base error for every gateway failure."""

    code = "GATEWAY_ERROR"


class AuthenticationMissingError(GatewayError):
    code = "AUTHENTICATION_MISSING"


class AuthenticationExpiredError(GatewayError):
    code = "AUTHENTICATION_EXPIRED"


class ProviderRequestFailedError(GatewayError):
    """Non-2xx status, unreadable body or transport failure from a provider."""

    code = "PROVIDER_REQUEST_FAILED"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body_preview: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body_preview = body_preview


class StreamFrameMalformedError(GatewayError):
    code = "STREAM_FRAME_MALFORMED"

    def __init__(self, message: str, *, frame: str) -> None:
        super().__init__(message)
        self.frame = frame


class ExtractionFailedError(GatewayError):
    code = "EXTRACTION_FAILED"

    def __init__(self, message: str, *, text_length: int = 0, preview: str = "") -> None:
        super().__init__(message)
        self.text_length = text_length
        self.preview = preview


class OAuthFlowError(GatewayError):
    code = "OAUTH_FLOW_ERROR"


class DeviceAuthorizationError(OAuthFlowError):
    """The device/user code request itself was refused."""

    code = "DEVICE_AUTHORIZATION_FAILED"


class DeviceFlowExpiredError(OAuthFlowError, TimeoutError):
    code = "DEVICE_FLOW_EXPIRED"


class DeviceFlowRejectedError(OAuthFlowError):
    code = "DEVICE_FLOW_REJECTED"

    def __init__(self, message: str, *, error: str | None = None) -> None:
        super().__init__(message)
        self.error = error
