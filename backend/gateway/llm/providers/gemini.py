"""Gemini provider implementation.

Implements the LLMProvider interface on top of the google-genai SDK.
Assistant turns produced by Gemini keep their raw parts (including thought
signatures) so a tool round can replay them verbatim.
"""

import base64
import json
import logging
import os
import re
import uuid
from collections.abc import AsyncIterator
from typing import Any

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

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

EMPTY_SCHEMA = {"type": "object", "properties": {}}
DATA_URL_PATTERN = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)

FINISH_REASON_MAP = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
}


def _generate_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def _finish_reason(reason: Any) -> str:
    if reason is None:
        return "stop"
    key = getattr(reason, "value", reason)
    return FINISH_REASON_MAP.get(str(key), "stop")


class GeminiProvider(LLMProvider):
    """Google Gemini provider (google-genai, async client)."""

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = 60.0,
    ):
        """Initialize Gemini provider.

        Args:
            api_key: Gemini API key. Defaults to GEMINI_API_KEY env var.
            timeout: Request timeout in seconds.
        """
        self._api_key = api_key or os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
        self._timeout = timeout
        self._client: genai.Client | None = None

    @property
    def name(self) -> str:
        return "gemini"

    @property
    def client(self) -> genai.Client:
        """Lazy-initialized google-genai client."""
        if self._client is None:
            if not self._api_key:
                raise AuthenticationError(
                    "Gemini API key not configured. Set GEMINI_API_KEY environment variable.",
                    provider=self.name,
                )
            self._client = genai.Client(
                api_key=self._api_key,
                http_options=types.HttpOptions(timeout=int(self._timeout * 1000)),
            )
        return self._client

    async def chat(self, params: ChatParams) -> ChatResult:
        """Send a completion request to Gemini."""
        request = self._build_request(params)

        try:
            response = await self.client.aio.models.generate_content(**request)
        except genai_errors.APIError as e:
            raise self._translate_error(e) from e
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(
                f"Gemini request timed out after {self._timeout}s", provider=self.name
            ) from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(
                f"Failed to connect to Gemini: {e}", provider=self.name
            ) from e

        return self._parse_response(response)

    async def chat_stream(self, params: ChatParams) -> AsyncIterator[ChatChunk]:
        """Stream a completion from Gemini.

        Gemini delivers function calls whole, so they are forwarded as soon
        as they appear. The terminal chunk carries usage and the raw parts
        of the whole turn.
        """
        request = self._build_request(params)
        raw_parts: list[types.Part] = []
        has_tool_calls = False
        finish = None
        usage = Usage()

        try:
            stream = await self.client.aio.models.generate_content_stream(**request)

            async for chunk in stream:
                if chunk.usage_metadata is not None:
                    usage = self._usage(chunk.usage_metadata)

                candidate = chunk.candidates[0] if chunk.candidates else None
                if candidate is None:
                    continue
                if candidate.finish_reason is not None:
                    finish = candidate.finish_reason

                parts = candidate.content.parts if candidate.content and candidate.content.parts else []
                for part in parts:
                    raw_parts.append(part)
                    if part.function_call is not None:
                        has_tool_calls = True
                        yield ChatChunk(tool_calls=[self._to_tool_call(part.function_call)])
                    elif part.text and not part.thought:
                        yield ChatChunk(content=part.text)

        except genai_errors.APIError as e:
            raise self._translate_error(e) from e
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(
                f"Gemini stream timed out after {self._timeout}s", provider=self.name
            ) from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(
                f"Failed to connect to Gemini: {e}", provider=self.name
            ) from e

        yield ChatChunk(
            finish_reason="tool_calls" if has_tool_calls else _finish_reason(finish),
            usage=usage,
            provider_parts=raw_parts or None,
        )

    def _build_request(self, params: ChatParams) -> dict[str, Any]:
        """Convert ChatParams to generate_content keyword arguments."""
        system_parts = [msg.text() for msg in params.messages if msg.role == "system"]
        system_parts = [text for text in system_parts if text]

        config_kwargs: dict[str, Any] = {}
        if system_parts:
            config_kwargs["system_instruction"] = "\n\n".join(system_parts)
        if params.temperature is not None:
            config_kwargs["temperature"] = params.temperature
        if params.max_tokens is not None:
            config_kwargs["max_output_tokens"] = params.max_tokens
        if params.top_p is not None:
            config_kwargs["top_p"] = params.top_p
        if params.top_k is not None:
            config_kwargs["top_k"] = params.top_k
        if params.stop:
            config_kwargs["stop_sequences"] = params.stop
        if params.response_format and params.response_format.get("type") in ("json_object", "json_schema"):
            config_kwargs["response_mime_type"] = "application/json"
            schema = (params.response_format.get("json_schema") or {}).get("schema")
            if schema:
                config_kwargs["response_json_schema"] = schema

        if params.tools:
            config_kwargs["tools"] = [
                types.Tool(
                    function_declarations=[
                        types.FunctionDeclaration(
                            name=tool.function.name,
                            description=tool.function.description or "",
                            parameters_json_schema=tool.function.parameters or EMPTY_SCHEMA,
                        )
                        for tool in params.tools
                    ]
                )
            ]

            choice = params.tool_choice
            if choice == "auto":
                config_kwargs["tool_config"] = {"function_calling_config": {"mode": "AUTO"}}
            elif choice == "required":
                config_kwargs["tool_config"] = {"function_calling_config": {"mode": "ANY"}}
            elif choice == "none":
                config_kwargs["tool_config"] = {"function_calling_config": {"mode": "NONE"}}
            elif isinstance(choice, ToolChoiceFunction):
                config_kwargs["tool_config"] = {
                    "function_calling_config": {
                        "mode": "ANY",
                        "allowed_function_names": [choice.function.name],
                    }
                }

        return {
            "model": params.model,
            "contents": self._build_contents(params.messages),
            "config": types.GenerateContentConfig(**config_kwargs),
        }

    def _build_contents(self, messages: list[ChatMessage]) -> list[types.Content]:
        contents: list[types.Content] = []
        call_names: dict[str, str] = {}

        for msg in messages:
            if msg.role == "system":
                continue

            if msg.role == "assistant":
                for call in msg.tool_calls or []:
                    call_names[call.id] = call.function.name
                contents.append(types.Content(role="model", parts=self._assistant_parts(msg)))

            elif msg.role == "tool":
                name = call_names.get(msg.tool_call_id or "") or msg.name or "unknown_function"
                part = types.Part.from_function_response(
                    name=name, response=self._tool_response(msg.text())
                )
                # Function responses for one turn share a single user content
                last = contents[-1] if contents else None
                if last is not None and last.role == "user" and all(
                    p.function_response is not None for p in last.parts or []
                ):
                    last.parts.append(part)
                else:
                    contents.append(types.Content(role="user", parts=[part]))

            else:
                parts = self._convert_content(msg.content)
                contents.append(types.Content(role="user", parts=parts or [types.Part.from_text(text="")]))

        return contents

    def _assistant_parts(self, msg: ChatMessage) -> list[types.Part]:
        if msg.provider_parts:
            return list(msg.provider_parts)

        parts = self._convert_content(msg.content)
        for call in msg.tool_calls or []:
            try:
                args = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                args = {}
            parts.append(types.Part.from_function_call(name=call.function.name, args=args))
        return parts or [types.Part.from_text(text="")]

    def _convert_content(self, content: Any) -> list[types.Part]:
        if content is None:
            return []
        if isinstance(content, str):
            return [types.Part.from_text(text=content)] if content else []

        parts: list[types.Part] = []
        for part in content:
            if isinstance(part, TextPart):
                parts.append(types.Part.from_text(text=part.text))
            elif isinstance(part, ImagePart):
                url = part.image_url.url
                match = DATA_URL_PATTERN.match(url)
                if match:
                    parts.append(types.Part.from_bytes(
                        data=base64.b64decode(match.group(2)), mime_type=match.group(1)
                    ))
                else:
                    parts.append(types.Part.from_uri(file_uri=url, mime_type="image/jpeg"))
        return parts

    @staticmethod
    def _tool_response(text: str) -> dict[str, Any]:
        try:
            parsed = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            return {"result": text}
        return parsed if isinstance(parsed, dict) else {"result": parsed}

    @staticmethod
    def _to_tool_call(function_call: types.FunctionCall) -> ToolCall:
        return ToolCall(
            id=function_call.id or _generate_call_id(),
            function=FunctionCall(
                name=function_call.name or "",
                arguments=json.dumps(function_call.args or {}),
            ),
        )

    @staticmethod
    def _usage(metadata: types.GenerateContentResponseUsageMetadata) -> Usage:
        return Usage.of(
            metadata.prompt_token_count or 0,
            metadata.candidates_token_count or 0,
        )

    def _parse_response(self, response: types.GenerateContentResponse) -> ChatResult:
        """Convert a Gemini response to ChatResult."""
        usage = self._usage(response.usage_metadata) if response.usage_metadata else Usage()
        candidate = response.candidates[0] if response.candidates else None
        if candidate is None:
            block_reason = response.prompt_feedback.block_reason if response.prompt_feedback else None
            if block_reason is not None:
                raise ContentFilterError(
                    f"Gemini blocked the prompt: {getattr(block_reason, 'value', block_reason)}",
                    provider=self.name,
                )
            return ChatResult(content=None, finish_reason="stop", usage=usage)

        parts = list(candidate.content.parts) if candidate.content and candidate.content.parts else []
        text_parts = [part.text for part in parts if part.text and not part.thought]
        tool_calls = [self._to_tool_call(part.function_call) for part in parts if part.function_call is not None]

        return ChatResult(
            content="".join(text_parts) if text_parts else None,
            tool_calls=tool_calls or None,
            finish_reason="tool_calls" if tool_calls else _finish_reason(candidate.finish_reason),
            usage=usage,
            provider_parts=parts or None,
        )

    def _translate_error(self, error: genai_errors.APIError) -> LLMError:
        """Convert google-genai API errors to LLMError types."""
        code = error.code or 500
        message = error.message or str(error)

        if code in (401, 403):
            return AuthenticationError(f"Gemini authentication failed: {message}", provider=self.name)
        if code == 429:
            return RateLimitError(f"Gemini rate limit exceeded: {message}", provider=self.name)
        if code in (400, 404):
            if "safety" in message.lower() or "blocked" in message.lower():
                return ContentFilterError(f"Content blocked by Gemini safety filters: {message}", provider=self.name)
            return InvalidRequestError(f"Invalid request to Gemini: {message}", provider=self.name)
        if code >= 500:
            return ProviderUnavailableError(f"Gemini server error ({code}): {message}", provider=self.name)
        return LLMError(f"Gemini error ({code}): {message}", provider=self.name)
