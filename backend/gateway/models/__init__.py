"""Backend models package.

Note: keep backend models as the source-of-truth schemas for the OpenAPI docs.
"""

from .auth import (
    AuthorizeRequest,
    AuthorizeResponse,
    SessionClaims,
    SessionKeyRecord,
)
from .chat import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    Choice,
    ChunkChoice,
    ChunkDelta,
    ModelInfo,
    Plugin,
    ResponseMessage,
)

__all__ = [
    # Auth models
    "AuthorizeRequest",
    "AuthorizeResponse",
    "SessionClaims",
    "SessionKeyRecord",
    # Chat models
    "ChatCompletionRequest",
    "ChatCompletionResponse",
    "ChatCompletionChunk",
    "Choice",
    "ChunkChoice",
    "ChunkDelta",
    "ModelInfo",
    "Plugin",
    "ResponseMessage",
]
