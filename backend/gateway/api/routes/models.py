"""Model catalog endpoint."""

from fastapi import APIRouter, Depends

from gateway.api.dependencies import get_registry
from gateway.llm import ProviderRegistry
from gateway.models.chat import ModelInfo
from gateway.services.pricing import PRICING

router = APIRouter(tags=["Models"])


@router.get("/models")
async def list_models(registry: ProviderRegistry = Depends(get_registry)) -> dict:
    """List supported models with USD prices per million tokens."""
    data = []
    for route in registry.models:
        pricing = PRICING.get(route.model)
        data.append(ModelInfo(
            id=route.model,
            name=route.display_name,
            provider=route.provider,
            pricing={
                "prompt": format(pricing.input, "f") if pricing else "0",
                "completion": format(pricing.output, "f") if pricing else "0",
            },
        ).model_dump())
    return {"data": data}
