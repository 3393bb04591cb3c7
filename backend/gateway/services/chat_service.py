"""Completion orchestration: provider dispatch plus the agentic tool loop.

A request is turned into provider-neutral parameters, sent to the adapter
that serves its model and, while the model asks only for tools the gateway
itself can run, continued for another round with the tool results
appended. Token usage is summed across every round.
"""

import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator

from gateway.api.exceptions import ToolExecutionError
from gateway.llm.models import ChatMessage, ChatParams, FinishReason, Tool, ToolCall, Usage
from gateway.llm.providers.base import LLMProvider
from gateway.llm.registry import ProviderRegistry
from gateway.models.chat import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    Choice,
    ChunkChoice,
    ChunkDelta,
    ResponseMessage,
)
from gateway.tools.mcp_bridge import ToolCatalogBridge

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 10


class UsageMeter:
    """Running token total for one exchange.

    Owned by the caller so usage from finished rounds stays readable when a
    later round fails.
    """

    def __init__(self):
        self.usage = Usage()

    def add(self, usage: Usage) -> None:
        self.usage = self.usage + usage


def _completion_id() -> str:
    return f"gen-{uuid.uuid4()}"


def _parse_arguments(call: ToolCall) -> dict:
    try:
        arguments = json.loads(call.function.arguments or "{}")
    except json.JSONDecodeError as e:
        raise ToolExecutionError(call.function.name, f"Invalid JSON arguments: {e.msg}") from e
    if not isinstance(arguments, dict):
        raise ToolExecutionError(call.function.name, "Arguments must be a JSON object")
    return arguments


class CompletionOrchestrator:
    """Runs one chat completion exchange, possibly over several rounds.

    Args:
        registry: Model routing table with the provider adapters.
        bridge: Tool catalog used when the request enables the tool plugin.
        max_rounds: Upper bound on provider calls per exchange.
        rpc_url: Substituted into tool-server system messages.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        bridge: ToolCatalogBridge | None = None,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        rpc_url: str = "",
    ):
        self._registry = registry
        self._bridge = bridge
        self._max_rounds = max_rounds
        self._rpc_url = rpc_url

    def _dispatch(
        self,
        request: ChatCompletionRequest,
        wallet_address: str | None,
    ) -> tuple[LLMProvider, ChatParams]:
        provider, provider_model = self._registry.resolve(request.model)

        messages = list(request.messages)
        tools: list[Tool] | None = list(request.tools) if request.tools else None

        if request.tool_catalog_enabled and self._bridge is not None and self._bridge.has_servers:
            catalog = self._bridge.tools()
            if catalog:
                tools = (tools or []) + catalog
            system = [
                ChatMessage(role="system", content=text)
                for text in self._bridge.system_messages(wallet_address or "", self._rpc_url)
            ]
            messages = system + messages

        params = ChatParams(
            messages=messages,
            model=provider_model,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            top_p=request.top_p,
            top_k=request.top_k,
            stop=request.stop_sequences,
            tools=tools,
            tool_choice=request.tool_choice,
            response_format=request.response_format,
        )
        return provider, params

    def _runs_tool_round(self, request: ChatCompletionRequest, tool_calls: list[ToolCall] | None) -> bool:
        """True when every requested tool is one the gateway executes.

        Only tools a connected server advertises count, and only when the
        request enabled the catalog. A batch mixing gateway tools with
        caller tools is handed back to the caller untouched.
        """
        if not tool_calls or self._bridge is None or not request.tool_catalog_enabled:
            return False
        return all(self._bridge.owns(call.function.name) for call in tool_calls)

    async def _execute(self, call: ToolCall) -> ChatMessage:
        try:
            content = await self._bridge.execute(call.function.name, _parse_arguments(call))
        except ToolExecutionError as e:
            logger.warning(f"Tool {call.function.name} failed: {e.message}")
            content = f"Error executing tool {call.function.name}: {e.message}"
        return ChatMessage(role="tool", tool_call_id=call.id, content=content)

    async def _tool_round(
        self,
        params: ChatParams,
        content: str | None,
        tool_calls: list[ToolCall],
        provider_parts: list | None,
    ) -> None:
        """Run the round's tools concurrently and extend the transcript."""
        results = await asyncio.gather(*(self._execute(call) for call in tool_calls))
        assistant = ChatMessage(
            role="assistant",
            content=content or None,
            tool_calls=tool_calls,
            provider_parts=provider_parts,
        )
        params.messages = [*params.messages, assistant, *results]

    async def complete(
        self,
        request: ChatCompletionRequest,
        wallet_address: str | None = None,
        meter: UsageMeter | None = None,
    ) -> ChatCompletionResponse:
        """Run the exchange to completion and return the final response.

        Usage of every round is added to ``meter`` as soon as the round
        returns.

        Raises:
            LLMError: Adapter failure in any round.
        """
        provider, params = self._dispatch(request, wallet_address)
        if meter is None:
            meter = UsageMeter()

        for round_number in range(1, self._max_rounds + 1):
            result = await provider.chat(params)
            meter.add(result.usage)

            if not self._runs_tool_round(request, result.tool_calls):
                break
            if round_number == self._max_rounds:
                logger.warning(f"Tool loop hit the {self._max_rounds}-round limit for {request.model}")
                break

            logger.info(
                f"Tool round {round_number}: executing {len(result.tool_calls)} tool call(s)",
                extra={"model": request.model},
            )
            await self._tool_round(params, result.content, result.tool_calls, result.provider_parts)

        return ChatCompletionResponse(
            id=_completion_id(),
            created=int(time.time()),
            model=request.model,
            choices=[
                Choice(
                    message=ResponseMessage(content=result.content, tool_calls=result.tool_calls),
                    finish_reason=result.finish_reason,
                )
            ],
            usage=meter.usage,
        )

    async def stream(
        self,
        request: ChatCompletionRequest,
        wallet_address: str | None = None,
        meter: UsageMeter | None = None,
    ) -> AsyncIterator[ChatCompletionChunk]:
        """Yield the chunks of every round as one continuous stream.

        Each round's finish chunk is held back until the round is known to
        be the last, so aggregate usage lands on the final chunk only.

        Raises:
            LLMError: Adapter failure in any round; chunks already yielded
                stay valid.
        """
        provider, params = self._dispatch(request, wallet_address)
        completion_id = _completion_id()
        created = int(time.time())
        if meter is None:
            meter = UsageMeter()

        def make_chunk(
            content: str | None = None,
            tool_calls: list[ToolCall] | None = None,
            finish_reason: FinishReason | None = None,
            chunk_usage: Usage | None = None,
        ) -> ChatCompletionChunk:
            has_delta = content is not None or bool(tool_calls)
            return ChatCompletionChunk(
                id=completion_id,
                created=created,
                model=request.model,
                choices=[
                    ChunkChoice(
                        delta=ChunkDelta(
                            role="assistant" if has_delta else None,
                            content=content,
                            tool_calls=tool_calls or None,
                        ),
                        finish_reason=finish_reason,
                    )
                ],
                usage=chunk_usage,
            )

        for round_number in range(1, self._max_rounds + 1):
            content_parts: list[str] = []
            tool_calls: list[ToolCall] = []
            provider_parts = None
            finish_reason: FinishReason | None = None
            held: ChatCompletionChunk | None = None

            async for chunk in provider.chat_stream(params):
                if chunk.content:
                    content_parts.append(chunk.content)
                if chunk.tool_calls:
                    tool_calls.extend(chunk.tool_calls)
                if chunk.usage is not None:
                    meter.add(chunk.usage)
                if chunk.provider_parts is not None:
                    provider_parts = chunk.provider_parts

                if chunk.finish_reason is not None:
                    finish_reason = chunk.finish_reason
                    held = make_chunk(chunk.content, chunk.tool_calls, chunk.finish_reason)
                elif chunk.content or chunk.tool_calls:
                    yield make_chunk(chunk.content, chunk.tool_calls)

            last_round = round_number == self._max_rounds or not self._runs_tool_round(request, tool_calls)
            if held is None:
                held = make_chunk(finish_reason="tool_calls" if tool_calls else "stop")

            if last_round:
                if round_number == self._max_rounds and self._runs_tool_round(request, tool_calls):
                    logger.warning(f"Tool loop hit the {self._max_rounds}-round limit for {request.model}")
                held.usage = meter.usage
                yield held
                return

            yield held
            logger.info(
                f"Tool round {round_number}: executing {len(tool_calls)} tool call(s)",
                extra={"model": request.model, "stream": True},
            )
            await self._tool_round(params, "".join(content_parts), tool_calls, provider_parts)
