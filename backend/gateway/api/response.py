"""Response envelope helpers for consistent API responses.

Account routes (authorize, debt, health) use the ``{data, error}`` envelope.
Completion routes use the OpenAI-compatible ``{"error": {...}}`` body.
"""

from typing import Any


def success_response(data: Any) -> dict[str, Any]:
    """Create a success response envelope."""
    return {"data": data, "error": None}


def envelope_error(message: str) -> dict[str, Any]:
    """Create an error response envelope."""
    return {"data": None, "error": message}


def error_body(
    message: str,
    error_type: str,
    param: str | None = None,
    code: str | None = None,
) -> dict[str, Any]:
    """OpenAI-compatible error body; ``param`` and ``code`` only when set."""
    error: dict[str, Any] = {"message": message, "type": error_type}
    if param is not None:
        error["param"] = param
    if code is not None:
        error["code"] = code
    return {"error": error}
