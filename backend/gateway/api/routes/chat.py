"""Chat completion endpoint.

- POST /v1/chat/completions: OpenAI-compatible completion, JSON or SSE

Requests are validated, then gated, then run through the completion
orchestrator. The metered cost of every round that reached the provider is
added to the caller's debt when the exchange ends, whether it finished or
failed part way.
"""

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from gateway.api.dependencies import (
    get_access_gate,
    get_ledger,
    get_orchestrator,
    get_registry,
    require_grant,
)
from gateway.api.response import error_body
from gateway.llm import LLMError, ProviderRegistry, UnsupportedModelError, Usage
from gateway.models.chat import ChatCompletionRequest
from gateway.services.access_gate import AccessGate
from gateway.services.chat_service import CompletionOrchestrator, UsageMeter
from gateway.services.debt_ledger import DebtLedger
from gateway.services.pricing import CHAT_ROUTE, calculate_cost, is_priced_model

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])

SSE_DONE = "data: [DONE]\n\n"


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


async def record_exchange_usage(
    ledger: DebtLedger,
    wallet_address: str,
    model: str,
    usage: Usage,
) -> None:
    """Add the cost of one exchange to the wallet's debt."""
    if usage.total_tokens == 0:
        return
    if not is_priced_model(model):
        logger.warning(f"No pricing for {model}, usage not recorded")
        return
    cost = calculate_cost(model, usage.prompt_tokens, usage.completion_tokens)
    await ledger.record_usage(wallet_address, model, usage.prompt_tokens, usage.completion_tokens, cost)


async def _event_stream(
    orchestrator: CompletionOrchestrator,
    ledger: DebtLedger,
    body: ChatCompletionRequest,
    wallet_address: str,
    agent_wallet: str,
) -> AsyncIterator[str]:
    """SSE frames for a streamed exchange.

    Errors after the response has started become one error event; the
    stream always ends with the ``[DONE]`` sentinel. Usage is recorded
    even when the client goes away mid-stream.
    """
    meter = UsageMeter()
    try:
        async for chunk in orchestrator.stream(body, agent_wallet, meter):
            yield _sse(chunk.model_dump_json())
    except LLMError as e:
        logger.warning(f"Stream failed for {body.model}: {e}")
        yield _sse(json.dumps(error_body(e.message, e.error_type, code=e.code)))
    except Exception:
        logger.exception(f"Unexpected error while streaming {body.model}")
        yield _sse(json.dumps(error_body("Internal server error", "api_error", code="internal_error")))
    finally:
        await record_exchange_usage(ledger, wallet_address, body.model, meter.usage)

    yield SSE_DONE


@router.post("/chat/completions")
async def create_chat_completion(
    body: ChatCompletionRequest,
    request: Request,
    gate: AccessGate = Depends(get_access_gate),
    orchestrator: CompletionOrchestrator = Depends(get_orchestrator),
    registry: ProviderRegistry = Depends(get_registry),
    ledger: DebtLedger = Depends(get_ledger),
):
    """Create a chat completion.

    Unknown models are rejected before the gate so nobody pays for them.
    """
    if not registry.is_supported(body.model):
        raise UnsupportedModelError(body.model, [route.model for route in registry.models])

    grant = await require_grant(request, gate, CHAT_ROUTE)
    wallet_tag = grant.wallet_address[:10]
    # Tool servers act on the smart account when a session key is on file
    agent_wallet = grant.smart_account_address or grant.wallet_address
    logger.info(
        f"Chat completion for {wallet_tag}",
        extra={"model": body.model, "stream": body.stream, "via": grant.via},
    )

    if body.stream:
        return StreamingResponse(
            _event_stream(orchestrator, ledger, body, grant.wallet_address, agent_wallet),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    meter = UsageMeter()
    try:
        response = await orchestrator.complete(body, agent_wallet, meter)
    finally:
        await record_exchange_usage(ledger, grant.wallet_address, body.model, meter.usage)
    return response.model_dump(mode="json")
