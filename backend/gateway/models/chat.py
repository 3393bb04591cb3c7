"""Pydantic models for the chat completions API.

Request bodies are validated before the access gate runs. Unknown request
fields are accepted and ignored.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer

from gateway.llm.models import ChatMessage, FinishReason, Tool, ToolCall, ToolChoice, Usage

TOOL_CATALOG_PLUGIN = "web"


class Plugin(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str


class ChatCompletionRequest(BaseModel):
    """Request body for ``POST /v1/chat/completions``."""

    model_config = ConfigDict(extra="allow")

    messages: Annotated[list[ChatMessage], Field(min_length=1)]
    model: str
    temperature: Annotated[float, Field(ge=0, le=2)] | None = None
    max_tokens: Annotated[int, Field(gt=0)] | None = None
    top_p: Annotated[float, Field(ge=0, le=1)] | None = None
    top_k: Annotated[int, Field(gt=0)] | None = None
    stop: str | list[str] | None = None
    tools: list[Tool] | None = None
    tool_choice: ToolChoice | None = None
    response_format: dict[str, Any] | None = None
    plugins: list[Plugin] | None = None
    stream: bool = False

    @field_validator("messages")
    @classmethod
    def drop_provider_parts(cls, messages: list[ChatMessage]) -> list[ChatMessage]:
        """Provider turn metadata is gateway-internal, never caller supplied."""
        for message in messages:
            message.provider_parts = None
        return messages

    @property
    def stop_sequences(self) -> list[str] | None:
        if self.stop is None:
            return None
        return [self.stop] if isinstance(self.stop, str) else list(self.stop)

    @property
    def tool_catalog_enabled(self) -> bool:
        return any(plugin.id == TOOL_CATALOG_PLUGIN for plugin in self.plugins or [])


class ResponseMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str | None = None
    tool_calls: list[ToolCall] | None = None

    @model_serializer(mode="wrap")
    def _omit_empty_tool_calls(self, handler):
        data = handler(self)
        if not self.tool_calls:
            data.pop("tool_calls", None)
        return data


class Choice(BaseModel):
    index: int = 0
    message: ResponseMessage
    finish_reason: FinishReason
    logprobs: None = None


class ChatCompletionResponse(BaseModel):
    """Non-streaming completion response."""

    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: list[Choice]
    usage: Usage


class ChunkDelta(BaseModel):
    role: Literal["assistant"] | None = None
    content: str | None = None
    tool_calls: list[ToolCall] | None = None

    @model_serializer(mode="wrap")
    def _omit_unset(self, handler):
        return {key: value for key, value in handler(self).items() if value is not None}


class ChunkChoice(BaseModel):
    index: int = 0
    delta: ChunkDelta
    finish_reason: FinishReason | None = None


class ChatCompletionChunk(BaseModel):
    """One server-sent event of a streamed completion."""

    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: list[ChunkChoice]
    usage: Usage | None = None

    @model_serializer(mode="wrap")
    def _omit_missing_usage(self, handler):
        data = handler(self)
        if self.usage is None:
            data.pop("usage", None)
        return data


class ModelInfo(BaseModel):
    """Entry of ``GET /v1/models``."""

    id: str
    name: str
    provider: str
    pricing: dict[str, str]
