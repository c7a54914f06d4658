"""LLM adapter via litellm."""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generator, List, Optional, Sequence, Tuple

import litellm

from .composer import ComposedMessage
from .errors import ProviderConnectionError
from .history import ReasoningPayload, SignatureSource, build_reasoning_payload
from .request_builder import build_gemini_contents, build_openai_messages
from .response_flow import (
    RenderTransition,
    ResponseMode,
    StreamingTurn,
    TurnResult,
    resolve_response_mode,
)
from .thoughts import DEFAULT_MAX_OVERLAP, merge_streaming_thoughts

litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)

_SIGNATURE_KEYS = ("thought_signature", "thoughtSignature")


@dataclass
class LLMResponse:
    content: Optional[str] = None
    reasoning_content: Optional[str] = None
    signature: Optional[str] = None
    signature_source: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    usage: Optional[Dict] = None

    @property
    def reasoning(self) -> Optional[ReasoningPayload]:
        return build_reasoning_payload(self.signature, self.signature_source,
                                       self.reasoning_content, self.tool_calls)


def _extract_signature(obj: Any) -> Optional[str]:
    """Signatures arrive under several spellings, sometimes nested in provider fields."""
    for key in _SIGNATURE_KEYS:
        value = getattr(obj, key, None)
        if isinstance(value, str) and value:
            return value
    extra = getattr(obj, "provider_specific_fields", None)
    if isinstance(extra, dict):
        for key in _SIGNATURE_KEYS:
            value = extra.get(key)
            if isinstance(value, str) and value:
                return value
    for block in getattr(obj, "thinking_blocks", None) or []:
        value = block.get("signature") if isinstance(block, dict) else None
        if isinstance(value, str) and value:
            return value
    return None


def _fold_gemini_parts(parts: List[Dict[str, Any]]) -> Any:
    """Gemini parts back to OpenAI content: a plain string unless images are present."""
    if not any("inline_data" in p for p in parts):
        return "".join(p.get("text", "") for p in parts)
    content = []
    for part in parts:
        inline = part.get("inline_data")
        if inline:
            url = f"data:{inline['mime_type']};base64,{inline['data']}"
            content.append({"type": "image_url", "image_url": {"url": url}})
        elif "text" in part:
            content.append({"type": "text", "text": part["text"]})
    return content


def _usage_dict(usage: Any) -> Optional[Dict[str, int]]:
    if not usage:
        return None
    return {"prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens}


class LLMAdapter:
    """Unified LLM interface. Passes api_key/api_base directly to litellm,
    avoiding env-var pollution when switching between providers."""

    def __init__(self, model: str, api_family: str = "openai", temperature: float = 0.0,
                 max_tokens: int = 4096, api_base: Optional[str] = None,
                 api_key: Optional[str] = None, use_streaming: bool = True,
                 send_signatures: bool = True, overlap_window: int = DEFAULT_MAX_OVERLAP,
                 custom_system_prompt: str = ""):
        self.model = model
        self.api_family = api_family
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_base = api_base
        self.api_key = api_key
        self.use_streaming = use_streaming
        self.send_signatures = send_signatures
        self.overlap_window = overlap_window
        self.custom_system_prompt = custom_system_prompt

    @property
    def signature_source(self) -> str:
        if self.api_family.strip().lower() == "genai":
            return SignatureSource.GEMINI.value
        return SignatureSource.OPENAI.value

    def response_mode(self, request_stream: Optional[bool] = None) -> ResponseMode:
        if request_stream is None:
            request_stream = self.use_streaming
        return resolve_response_mode(self.api_family, self.use_streaming, request_stream)

    def build_payload(self, messages: Sequence[ComposedMessage]) -> List[Dict[str, Any]]:
        """Serialize composed messages into the litellm ``messages`` argument.

        litellm speaks the OpenAI shape for every provider, so Gemini
        signatures are folded onto the assistant entries it translates and
        ``inline_data`` parts go back out as ``image_url`` data URLs.
        """
        if self.signature_source == SignatureSource.GEMINI.value:
            body = build_gemini_contents(messages, self.model, self.send_signatures,
                                         self.custom_system_prompt)
            payload: List[Dict[str, Any]] = []
            system = body.get("systemInstruction")
            if system:
                payload.append({"role": "system",
                                "content": "\n".join(p["text"] for p in system["parts"])})
            for content in body["contents"]:
                entry: Dict[str, Any] = {
                    "role": "assistant" if content["role"] == "model" else content["role"],
                    "content": _fold_gemini_parts(content["parts"]),
                }
                signature = content["parts"][-1].get("thought_signature")
                if signature:
                    entry["thought_signature"] = signature
                payload.append(entry)
            return payload
        return build_openai_messages(messages, self.model, self.send_signatures,
                                     self.custom_system_prompt)

    def _completion_kwargs(self, messages: Sequence[ComposedMessage], stream: bool) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model, "messages": self.build_payload(messages),
            "temperature": self.temperature, "max_tokens": self.max_tokens,
        }
        if stream:
            kwargs["stream"] = True
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        return kwargs

    def chat(self, messages: Sequence[ComposedMessage]) -> LLMResponse:
        kwargs = self._completion_kwargs(messages, stream=False)
        try:
            response = litellm.completion(**kwargs)
        except litellm.exceptions.AuthenticationError as e:
            raise ProviderConnectionError(self.model, f"Auth failed. Check API key.\n{e}") from e
        except litellm.exceptions.APIConnectionError as e:
            raise ProviderConnectionError(
                self.model, f"Cannot connect: base={self.api_base or 'default'}\n{e}") from e
        except Exception as e:
            raise ProviderConnectionError(self.model, f"LLM error: {type(e).__name__}: {e}") from e

        msg = response.choices[0].message
        tool_calls = None
        if getattr(msg, "tool_calls", None):
            tool_calls = [tc.model_dump() if hasattr(tc, "model_dump") else dict(tc)
                          for tc in msg.tool_calls]

        signature = _extract_signature(msg)
        return LLMResponse(
            content=msg.content,
            reasoning_content=getattr(msg, "reasoning_content", None),
            signature=signature,
            signature_source=self.signature_source if signature else None,
            tool_calls=tool_calls,
            usage=_usage_dict(getattr(response, "usage", None)),
        )

    def chat_stream(self, messages: Sequence[ComposedMessage]
                    ) -> Generator[Tuple[str, Any], None, None]:
        """Streaming chat. Yields (event_type, data) tuples.

        Event types:
          "text"       — str: incremental answer content
          "reasoning"  — str: incremental reasoning content
          "signature"  — str: latest reasoning signature
          "tool_calls" — list: tool call fragments merged so far
          "done"       — LLMResponse: final complete response

        Uses a single non-streaming call when the resolved mode says so, and
        falls back to one when the stream cannot be opened.
        """
        if self.response_mode() is ResponseMode.NON_STREAM:
            yield from self._as_events(self.chat(messages))
            return

        try:
            response_stream = litellm.completion(**self._completion_kwargs(messages, stream=True))
        except Exception as e:
            logger.warning("stream open failed (%s: %s); retrying without streaming",
                           type(e).__name__, e)
            yield from self._as_events(self.chat(messages))
            return

        full_content = ""
        reasoning = ""
        signature: Optional[str] = None
        tc_data: Dict[int, Dict[str, str]] = {}
        usage = None

        try:
            for chunk in response_stream:
                # Usage-only final chunk (some providers)
                if not chunk.choices:
                    usage = _usage_dict(getattr(chunk, "usage", None)) or usage
                    continue

                delta = chunk.choices[0].delta

                chunk_signature = _extract_signature(delta)
                if chunk_signature:
                    signature = chunk_signature
                    yield ("signature", chunk_signature)

                rc = getattr(delta, "reasoning_content", None)
                if rc:
                    reasoning = merge_streaming_thoughts(reasoning, rc, self.overlap_window)
                    yield ("reasoning", rc)

                if getattr(delta, "content", None):
                    full_content += delta.content
                    yield ("text", delta.content)

                if getattr(delta, "tool_calls", None):
                    for tc_delta in delta.tool_calls:
                        idx = tc_delta.index
                        if idx not in tc_data:
                            tc_data[idx] = {"id": "", "name": "", "args": ""}
                        if tc_delta.id:
                            tc_data[idx]["id"] = tc_delta.id
                        if tc_delta.function:
                            if tc_delta.function.name:
                                tc_data[idx]["name"] = tc_delta.function.name
                            if tc_delta.function.arguments:
                                tc_data[idx]["args"] += tc_delta.function.arguments
                    yield ("tool_calls", self._tool_calls(tc_data))

                usage = _usage_dict(getattr(chunk, "usage", None)) or usage
        except Exception as e:
            raise ProviderConnectionError(
                self.model, f"Stream interrupted: {type(e).__name__}: {e}") from e

        yield ("done", LLMResponse(
            content=full_content or None,
            reasoning_content=reasoning or None,
            signature=signature,
            signature_source=self.signature_source if signature else None,
            tool_calls=self._tool_calls(tc_data) or None,
            usage=usage,
        ))

    @staticmethod
    def _tool_calls(tc_data: Dict[int, Dict[str, str]]) -> List[Dict[str, Any]]:
        calls = []
        for idx in sorted(tc_data.keys()):
            tc = tc_data[idx]
            calls.append({"id": tc["id"], "type": "function",
                          "function": {"name": tc["name"], "arguments": tc["args"]}})
        return calls

    @staticmethod
    def _as_events(response: LLMResponse) -> Generator[Tuple[str, Any], None, None]:
        if response.signature:
            yield ("signature", response.signature)
        if response.reasoning_content:
            yield ("reasoning", response.reasoning_content)
        if response.content:
            yield ("text", response.content)
        if response.tool_calls:
            yield ("tool_calls", response.tool_calls)
        yield ("done", response)

    def run_turn(self, messages: Sequence[ComposedMessage],
                 on_transition: Optional[Callable[[RenderTransition, StreamingTurn], None]] = None,
                 ) -> TurnResult:
        """Drive one assistant turn through the streaming state machine.

        ``on_transition`` is the renderer hook; it may call
        ``turn.bind_message()`` once it has created the message.
        """
        turn = StreamingTurn(max_overlap=self.overlap_window)
        for event_type, data in self.chat_stream(messages):
            if event_type == "text":
                transition = turn.feed(answer_delta=data)
            elif event_type == "reasoning":
                transition = turn.feed(reasoning_delta=data)
            elif event_type == "signature":
                transition = turn.feed(signature=data, signature_source=self.signature_source)
            elif event_type == "tool_calls":
                transition = turn.feed(tool_invocations=data)
            else:
                continue
            if on_transition is not None:
                on_transition(transition, turn)
        return turn.finish()
