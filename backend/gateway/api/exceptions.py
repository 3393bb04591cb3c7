"""Custom exception classes for the API."""

from typing import Any


class ValidationError(Exception):
    """Raised when the request body fails schema validation."""

    def __init__(self, message: str, param: str | None = None):
        self.message = message
        self.param = param
        super().__init__(message)


class PaymentRequiredError(Exception):
    """Raised when the access gate denies a request.

    Rendered as HTTP 402 with the priced requirements in the
    ``payment-required`` header.
    """

    def __init__(self, reason: str, accepts: list[dict[str, Any]], resource: str):
        self.reason = reason
        self.accepts = accepts
        self.resource = resource
        super().__init__(reason)


class SettlementError(Exception):
    """Raised when the facilitator does not confirm a settlement."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ToolExecutionError(Exception):
    """Raised when an external tool call fails."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        self.message = message
        super().__init__(f"Tool '{tool_name}' failed: {message}")


class InvalidSignatureError(Exception):
    """Raised when a signature cannot be decoded or recovered."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)
