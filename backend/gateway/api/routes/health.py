"""Health check endpoint."""

from fastapi import APIRouter

from gateway.api.response import success_response

router = APIRouter(tags=["System"])


@router.get("/health")
async def health_check() -> dict:
    """Return gateway liveness."""
    return success_response({"status": "ok", "service": "llm-pay-gateway"})
