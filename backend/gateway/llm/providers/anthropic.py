"""Anthropic provider implementation.

Implements the LLMProvider interface for Anthropic's Messages API
(Claude models), for both complete and streamed responses.
"""

import json
import logging
import os
import re
from collections.abc import AsyncIterator
from typing import Any

from anthropic import (
    AsyncAnthropic,
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
)

from ..errors import (
    AuthenticationError,
    ContentFilterError,
    InvalidRequestError,
    LLMError,
    ProviderUnavailableError,
    RateLimitError,
)
from ..models import (
    ChatChunk,
    ChatMessage,
    ChatParams,
    ChatResult,
    FunctionCall,
    ImagePart,
    TextPart,
    ToolCall,
    ToolChoiceFunction,
    Usage,
)
from .base import LLMProvider

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
EMPTY_SCHEMA = {"type": "object", "properties": {}}
SUPPORTED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
DATA_URL_PATTERN = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)

# Anthropic stop reasons → uniform finish reasons
FINISH_REASON_MAP = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
}


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API provider.

    Supports:
    - Function/tool calling (tool_use / tool_result blocks)
    - Vision (base64 data URLs and remote image URLs)
    - Streaming with per-block buffering of tool arguments
    """

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = 60.0,
    ):
        """Initialize Anthropic provider.

        Args:
            api_key: Anthropic API key. Defaults to ANTHROPIC_API_KEY env var.
            timeout: Request timeout in seconds.
        """
        self._api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self._timeout = timeout
        self._client: AsyncAnthropic | None = None

    @property
    def name(self) -> str:
        """Provider identifier."""
        return "anthropic"

    @property
    def client(self) -> AsyncAnthropic:
        """Lazy-initialized Anthropic client."""
        if self._client is None:
            if not self._api_key:
                raise AuthenticationError(
                    "Anthropic API key not configured. Set ANTHROPIC_API_KEY environment variable.",
                    provider=self.name,
                )
            self._client = AsyncAnthropic(api_key=self._api_key, timeout=self._timeout)
        return self._client

    async def chat(self, params: ChatParams) -> ChatResult:
        """Send a completion request to Anthropic."""
        anthropic_request = self._build_request(params)

        try:
            response = await self.client.messages.create(**anthropic_request)
            return self._parse_response(response)

        except APITimeoutError as e:
            raise ProviderUnavailableError(
                f"Anthropic request timed out after {self._timeout}s",
                provider=self.name,
            ) from e

        except APIConnectionError as e:
            raise ProviderUnavailableError(
                f"Failed to connect to Anthropic: {e}",
                provider=self.name,
            ) from e

        except APIStatusError as e:
            self._handle_api_error(e)

    async def chat_stream(self, params: ChatParams) -> AsyncIterator[ChatChunk]:
        """Stream a completion from Anthropic.

        Text deltas are forwarded as they arrive. Tool-use argument
        fragments are buffered per content block index and emitted as one
        complete tool call when the block closes.
        """
        anthropic_request = self._build_request(params)
        pending_tools: dict[int, dict[str, str]] = {}
        prompt_tokens = 0
        completion_tokens = 0
        finish_reason = "stop"

        try:
            stream = await self.client.messages.create(**anthropic_request, stream=True)

            async for event in stream:
                if event.type == "message_start":
                    prompt_tokens = event.message.usage.input_tokens or 0
                    completion_tokens = event.message.usage.output_tokens or 0

                elif event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        pending_tools[event.index] = {
                            "id": block.id,
                            "name": block.name,
                            "arguments": "",
                        }

                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        yield ChatChunk(content=delta.text)
                    elif delta.type == "input_json_delta" and event.index in pending_tools:
                        pending_tools[event.index]["arguments"] += delta.partial_json

                elif event.type == "content_block_stop":
                    tool = pending_tools.pop(event.index, None)
                    if tool is not None:
                        yield ChatChunk(tool_calls=[
                            ToolCall(
                                id=tool["id"],
                                function=FunctionCall(
                                    name=tool["name"],
                                    arguments=tool["arguments"] or "{}",
                                ),
                            )
                        ])

                elif event.type == "message_delta":
                    if event.delta.stop_reason:
                        finish_reason = FINISH_REASON_MAP.get(event.delta.stop_reason, "stop")
                    if event.usage is not None:
                        completion_tokens = event.usage.output_tokens

        except APITimeoutError as e:
            raise ProviderUnavailableError(
                f"Anthropic stream timed out after {self._timeout}s",
                provider=self.name,
            ) from e

        except APIConnectionError as e:
            raise ProviderUnavailableError(
                f"Failed to connect to Anthropic: {e}",
                provider=self.name,
            ) from e

        except APIStatusError as e:
            self._handle_api_error(e)

        yield ChatChunk(
            finish_reason=finish_reason,
            usage=Usage.of(prompt_tokens, completion_tokens),
        )

    def _build_request(self, params: ChatParams) -> dict[str, Any]:
        """Convert ChatParams to Anthropic API format."""
        system_parts = []
        messages: list[dict[str, Any]] = []

        for msg in params.messages:
            if msg.role == "system":
                # Anthropic takes system as a top-level parameter
                text = msg.text()
                if text:
                    system_parts.append(text)
            elif msg.role == "tool":
                self._append_tool_result(messages, msg)
            elif msg.role == "assistant":
                messages.append(self._convert_assistant(msg))
            else:
                messages.append({
                    "role": "user",
                    "content": self._convert_content(msg.content),
                })

        anthropic_request: dict[str, Any] = {
            "model": params.model,
            "messages": messages,
            "max_tokens": params.max_tokens or DEFAULT_MAX_TOKENS,
        }

        if system_parts:
            anthropic_request["system"] = "\n\n".join(system_parts)

        # Anthropic accepts 0-1, callers may send up to 2
        if params.temperature is not None:
            anthropic_request["temperature"] = min(params.temperature, 1.0)
        if params.top_p is not None:
            anthropic_request["top_p"] = params.top_p
        if params.top_k is not None:
            anthropic_request["top_k"] = params.top_k
        if params.stop:
            anthropic_request["stop_sequences"] = params.stop

        if params.tools:
            anthropic_request["tools"] = [
                {
                    "name": tool.function.name,
                    "description": tool.function.description or "",
                    "input_schema": tool.function.parameters or EMPTY_SCHEMA,
                }
                for tool in params.tools
            ]

            choice = params.tool_choice
            if choice == "auto":
                anthropic_request["tool_choice"] = {"type": "auto"}
            elif choice == "required":
                anthropic_request["tool_choice"] = {"type": "any"}
            elif choice == "none":
                # No "none" mode in the Messages API; withhold the tools instead
                del anthropic_request["tools"]
            elif isinstance(choice, ToolChoiceFunction):
                anthropic_request["tool_choice"] = {
                    "type": "tool",
                    "name": choice.function.name,
                }

        return anthropic_request

    def _convert_content(self, content: Any) -> str | list[dict[str, Any]]:
        """Convert message content to Anthropic text or content blocks."""
        if content is None:
            return ""
        if isinstance(content, str):
            return content

        blocks: list[dict[str, Any]] = []
        for part in content:
            if isinstance(part, TextPart):
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                blocks.append(self._convert_image(part.image_url.url))
        return blocks

    def _convert_image(self, url: str) -> dict[str, Any]:
        match = DATA_URL_PATTERN.match(url)
        if match:
            media_type = match.group(1)
            if media_type not in SUPPORTED_IMAGE_TYPES:
                media_type = "image/jpeg"
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": media_type, "data": match.group(2)},
            }
        return {"type": "image", "source": {"type": "url", "url": url}}

    def _convert_assistant(self, msg: ChatMessage) -> dict[str, Any]:
        if not msg.tool_calls:
            return {"role": "assistant", "content": self._convert_content(msg.content)}

        blocks: list[dict[str, Any]] = []
        text = msg.text()
        if text:
            blocks.append({"type": "text", "text": text})
        for call in msg.tool_calls:
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                logger.warning(f"Unparseable arguments for tool call {call.id}, sending empty input")
                arguments = {}
            blocks.append({
                "type": "tool_use",
                "id": call.id,
                "name": call.function.name,
                "input": arguments,
            })
        return {"role": "assistant", "content": blocks}

    def _append_tool_result(self, messages: list[dict[str, Any]], msg: ChatMessage) -> None:
        """Add a tool_result block, merging into the previous user turn."""
        block = {
            "type": "tool_result",
            "tool_use_id": msg.tool_call_id,
            "content": msg.text(),
        }

        last = messages[-1] if messages else None
        if last is not None and last["role"] == "user":
            if isinstance(last["content"], str):
                last["content"] = [{"type": "text", "text": last["content"]}] if last["content"] else []
            last["content"].append(block)
        else:
            messages.append({"role": "user", "content": [block]})

    def _parse_response(self, response: Any) -> ChatResult:
        """Convert Anthropic response to ChatResult."""
        text_parts = []
        tool_calls = []

        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.id,
                        function=FunctionCall(name=block.name, arguments=json.dumps(block.input)),
                    )
                )

        return ChatResult(
            content="".join(text_parts) if text_parts else None,
            tool_calls=tool_calls or None,
            finish_reason=FINISH_REASON_MAP.get(response.stop_reason, "stop"),
            usage=Usage.of(response.usage.input_tokens, response.usage.output_tokens),
        )

    def _handle_api_error(self, error: APIStatusError) -> None:
        """Convert Anthropic API errors to LLMError types."""
        status_code = error.status_code
        message = str(error.message) if hasattr(error, "message") else str(error)
        request_id = getattr(error, "request_id", None)

        if status_code in (401, 403):
            raise AuthenticationError(
                f"Anthropic authentication failed: {message}",
                provider=self.name,
                request_id=request_id,
            ) from error

        if status_code == 429:
            # Try to extract retry-after header
            retry_after = None
            if hasattr(error, "response") and error.response:
                retry_after_str = error.response.headers.get("retry-after")
                if retry_after_str:
                    try:
                        retry_after = float(retry_after_str)
                    except ValueError:
                        pass

            raise RateLimitError(
                f"Anthropic rate limit exceeded: {message}",
                retry_after=retry_after,
                provider=self.name,
                request_id=request_id,
            ) from error

        if status_code in (400, 404, 413, 422):
            if "safety" in message.lower() or "harmful" in message.lower():
                raise ContentFilterError(
                    f"Content blocked by Anthropic safety filters: {message}",
                    provider=self.name,
                    request_id=request_id,
                ) from error

            raise InvalidRequestError(
                f"Invalid request to Anthropic: {message}",
                provider=self.name,
                request_id=request_id,
            ) from error

        if status_code >= 500:
            # 529 is Anthropic's "overloaded"
            raise ProviderUnavailableError(
                f"Anthropic server error ({status_code}): {message}",
                provider=self.name,
                request_id=request_id,
            ) from error

        raise LLMError(
            f"Anthropic error ({status_code}): {message}",
            provider=self.name,
            request_id=request_id,
        ) from error
