"""chatturn: request composition and streaming-response coordination for chat clients."""

__version__ = "1.0.0"

from .composer import (
    USER_MESSAGE_SEPARATOR,
    ComposedMessage,
    ComposeRequest,
    PageContext,
    compose_messages,
)
from .history import (
    ConversationNode,
    ConversationTree,
    GeminiSignature,
    OpenAISignature,
    SignatureSource,
    build_reasoning_payload,
    select_nodes_by_role,
)
from .response_flow import (
    RenderAction,
    ResponseMode,
    StreamEvent,
    StreamingTurn,
    StreamState,
    plan_streaming_render_transition,
    plan_transition,
    resolve_response_mode,
)
from .thoughts import (
    ThinkTagSplitter,
    extract_thinking,
    merge_streaming_thoughts,
    merge_thoughts,
)

__all__ = [
    "__version__",
    "USER_MESSAGE_SEPARATOR",
    "ComposedMessage",
    "ComposeRequest",
    "PageContext",
    "compose_messages",
    "ConversationNode",
    "ConversationTree",
    "GeminiSignature",
    "OpenAISignature",
    "SignatureSource",
    "build_reasoning_payload",
    "select_nodes_by_role",
    "RenderAction",
    "ResponseMode",
    "StreamEvent",
    "StreamingTurn",
    "StreamState",
    "plan_streaming_render_transition",
    "plan_transition",
    "resolve_response_mode",
    "ThinkTagSplitter",
    "extract_thinking",
    "merge_streaming_thoughts",
    "merge_thoughts",
]
