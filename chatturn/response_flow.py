"""Streaming vs non-streaming resolution and the streaming render state machine.

Everything here is a pure input-to-output rule except ``StreamingTurn``,
which only threads its own per-turn state; rendering side effects stay with
the caller.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from .history import ReasoningPayload, build_reasoning_payload
from .thoughts import (
    DEFAULT_MAX_OVERLAP,
    ThinkTagSplitter,
    merge_streaming_thoughts,
    merge_thoughts,
)

__all__ = [
    "TOGGLE_STREAMING_FAMILY",
    "ResponseMode",
    "RenderAction",
    "StreamState",
    "StreamEvent",
    "RenderTransition",
    "TurnResult",
    "StreamingTurn",
    "resolve_response_mode",
    "plan_streaming_render_transition",
    "plan_transition",
]

logger = logging.getLogger(__name__)

# API family whose client picks streaming from a settings toggle instead of
# the request body's ``stream`` flag.
TOGGLE_STREAMING_FAMILY = "genai"


class ResponseMode(str, Enum):
    STREAM = "stream"
    NON_STREAM = "non_stream"


class RenderAction(str, Enum):
    NOOP = "noop"
    FIRST_CHUNK = "first_chunk"
    WAIT_FOR_MESSAGE = "wait_for_message"
    UPDATE_EXISTING = "update_existing"


@dataclass(frozen=True)
class StreamState:
    has_started_response: bool = False
    has_ever_shown_answer_content: bool = False


@dataclass(frozen=True)
class StreamEvent:
    has_delta: bool = False
    has_message_id: bool = False
    has_answer_content: bool = False


@dataclass(frozen=True)
class RenderTransition:
    action: RenderAction
    force_refresh: bool
    next_state: StreamState


def resolve_response_mode(api_family_label: Any,
                          configured_wants_streaming: Optional[bool] = None,
                          request_declares_stream: Optional[bool] = None) -> ResponseMode:
    family = api_family_label.strip().lower() if isinstance(api_family_label, str) else ""
    if family == TOGGLE_STREAMING_FAMILY:
        return ResponseMode.NON_STREAM if configured_wants_streaming is False else ResponseMode.STREAM
    return ResponseMode.STREAM if request_declares_stream is True else ResponseMode.NON_STREAM


def plan_streaming_render_transition(
    has_delta: bool = False,
    has_started_response: bool = False,
    has_message_id: bool = False,
    has_answer_content: bool = False,
    has_ever_shown_answer_content: bool = False,
) -> RenderTransition:
    """Decide the render action for one streamed chunk.

    - no delta: ``NOOP``, state untouched (heartbeats, control-only chunks)
    - first delta of the turn: ``FIRST_CHUNK``
    - later delta before the message identity exists: ``WAIT_FOR_MESSAGE``
    - later delta with a message: ``UPDATE_EXISTING``, forcing a refresh the
      first time answer content shows up
    """
    has_delta = has_delta is True
    has_started_response = has_started_response is True
    has_message_id = has_message_id is True
    has_answer_content = has_answer_content is True
    has_ever_shown_answer_content = has_ever_shown_answer_content is True

    if not has_delta:
        return RenderTransition(
            RenderAction.NOOP, False,
            StreamState(has_started_response, has_ever_shown_answer_content),
        )

    if not has_started_response:
        return RenderTransition(
            RenderAction.FIRST_CHUNK, False,
            StreamState(True, has_answer_content),
        )

    shown = has_ever_shown_answer_content or has_answer_content
    if not has_message_id:
        return RenderTransition(RenderAction.WAIT_FOR_MESSAGE, False, StreamState(True, shown))

    force_refresh = has_answer_content and not has_ever_shown_answer_content
    return RenderTransition(RenderAction.UPDATE_EXISTING, force_refresh, StreamState(True, shown))


def plan_transition(state: StreamState, event: StreamEvent) -> RenderTransition:
    return plan_streaming_render_transition(
        has_delta=event.has_delta,
        has_started_response=state.has_started_response,
        has_message_id=event.has_message_id,
        has_answer_content=event.has_answer_content,
        has_ever_shown_answer_content=state.has_ever_shown_answer_content,
    )


# ── Per-turn driver ──


@dataclass
class TurnResult:
    answer: str
    thoughts: str
    reasoning: Optional[ReasoningPayload] = None


@dataclass
class StreamingTurn:
    """State of one streaming assistant turn.

    Owned by the turn that created it; the ingestion loop feeds chunks one at
    a time and discards the object on cancellation.
    """
    max_overlap: int = DEFAULT_MAX_OVERLAP
    answer: str = ""
    thoughts: str = ""
    reasoning_content: str = ""
    state: StreamState = field(default_factory=StreamState)
    message_id: Optional[str] = None
    signature: Optional[str] = None
    signature_source: Optional[str] = None
    tool_invocations: Optional[List[Any]] = None
    _splitter: ThinkTagSplitter = field(default_factory=ThinkTagSplitter, repr=False)
    _inline_thoughts: str = field(default="", repr=False)

    def bind_message(self, message_id: Optional[str]) -> None:
        self.message_id = message_id or None

    def feed(self, answer_delta: str = "", reasoning_delta: str = "",
             signature: Optional[str] = None, signature_source: Optional[str] = None,
             tool_invocations: Optional[List[Any]] = None) -> RenderTransition:
        if signature:
            self.signature = signature
            self.signature_source = signature_source or self.signature_source
        if tool_invocations:
            self.tool_invocations = list(tool_invocations)

        answer_part, thought_part = self._splitter.feed(answer_delta or "")
        if reasoning_delta:
            # Verbatim copy for replay; the display copy may also absorb inline spans.
            self.reasoning_content = merge_streaming_thoughts(
                self.reasoning_content, reasoning_delta, self.max_overlap)
            self.thoughts = merge_streaming_thoughts(self.thoughts, reasoning_delta, self.max_overlap)
        if thought_part:
            self._inline_thoughts += thought_part
            self.thoughts += thought_part
        self.answer += answer_part

        has_delta = bool(answer_delta or reasoning_delta or tool_invocations)
        transition = plan_streaming_render_transition(
            has_delta=has_delta,
            has_started_response=self.state.has_started_response,
            has_message_id=self.message_id is not None,
            has_answer_content=bool(self.answer.strip()),
            has_ever_shown_answer_content=self.state.has_ever_shown_answer_content,
        )
        self.state = transition.next_state
        return transition

    def finish(self) -> TurnResult:
        answer_rest, thought_rest = self._splitter.flush()
        self.answer += answer_rest
        if thought_rest:
            self._inline_thoughts += thought_rest
            self.thoughts += thought_rest

        # Some providers echo their reasoning inline as well; keep one copy.
        if self.reasoning_content and self._inline_thoughts:
            self.thoughts = merge_thoughts(self.reasoning_content, self._inline_thoughts)

        reasoning = build_reasoning_payload(
            self.signature,
            self.signature_source,
            self.reasoning_content or None,
            self.tool_invocations,
        )
        if self.signature and reasoning is None:
            logger.warning("discarding signature with unknown source %r", self.signature_source)
        return TurnResult(answer=self.answer, thoughts=self.thoughts, reasoning=reasoning)
