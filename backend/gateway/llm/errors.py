"""LLM error hierarchy.

Typed exceptions raised by provider adapters. The API layer maps each class
to an HTTP status and an error ``type`` for the caller.
"""


class LLMError(Exception):
    """Base exception for LLM operations."""

    # Caller-facing classification, overridden per subclass
    status_code = 500
    error_type = "api_error"
    code: str | None = None

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        request_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.request_id = request_id

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.provider:
            parts.append(f"provider={self.provider}")
        if self.request_id:
            parts.append(f"request_id={self.request_id}")
        return " ".join(parts)


class AuthenticationError(LLMError):
    """401/403 - Invalid or missing provider API key.

    This is a gateway misconfiguration, not a caller fault.
    """

    status_code = 500
    error_type = "api_error"
    code = "authentication_error"


class RateLimitError(LLMError):
    """429 - Upstream rate limit exceeded.

    Carries ``retry_after`` (seconds) when the provider supplies it.
    """

    status_code = 429
    error_type = "rate_limit_error"
    code = "rate_limit_exceeded"

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        provider: str | None = None,
        request_id: str | None = None,
    ):
        super().__init__(message, provider, request_id)
        self.retry_after = retry_after


class ProviderUnavailableError(LLMError):
    """500/502/503/529, timeouts and connection failures."""

    status_code = 503
    error_type = "api_error"
    code = "provider_unavailable"


class InvalidRequestError(LLMError):
    """400 - Provider rejected the parameters."""

    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_request"

    def __init__(
        self,
        message: str,
        param: str | None = None,
        provider: str | None = None,
        request_id: str | None = None,
    ):
        super().__init__(message, provider, request_id)
        self.param = param


class ContentFilterError(LLMError):
    """Upstream refused the request on policy grounds."""

    status_code = 400
    error_type = "content_filter_error"
    code = "content_filter"


class UnsupportedModelError(LLMError):
    """Model identifier is not in the routing table."""

    status_code = 400
    error_type = "invalid_request_error"
    code = "model_not_supported"

    def __init__(self, model: str, supported: list[str]):
        super().__init__(
            f"Model '{model}' is not supported. Supported models: {', '.join(supported)}"
        )
        self.model = model
        self.supported = supported
