"""Request message composition: system block, history window and spacing."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .history import (
    OpenAISignature,
    ReasoningPayload,
    build_reasoning_payload,
    normalize_optional_ceiling,
    normalize_role,
    select_nodes_by_role,
)
from .prompts import PromptTemplate
from .thoughts import extract_thinking

__all__ = [
    "USER_MESSAGE_SEPARATOR",
    "SCREENSHOT_NOTICE",
    "PageContext",
    "ComposedMessage",
    "ComposeRequest",
    "compose_messages",
    "build_system_message",
    "node_to_message",
    "apply_user_message_spacing",
]

logger = logging.getLogger(__name__)

USER_MESSAGE_SEPARATOR = "\n\n---\n\n"
SCREENSHOT_NOTICE = "\nThe user attached a screenshot of the current page"


@dataclass(frozen=True)
class PageContext:
    title: str = ""
    url: str = ""
    content: str = ""

    def is_empty(self) -> bool:
        return not (self.title or self.url or self.content)

    def to_prompt_block(self) -> str:
        return (
            "\n\nCurrent page content:\n"
            f"Title: {self.title or ''}\n"
            f"URL: {self.url or ''}\n"
            f"Content: {self.content or ''}"
        )


@dataclass(frozen=True)
class ComposedMessage:
    """Request-shaped projection of one conversation node."""
    role: str
    content: Any
    reasoning: Optional[ReasoningPayload] = None
    source_model_id: Optional[str] = None

    @property
    def reasoning_signature(self) -> Optional[str]:
        return self.reasoning.signature if self.reasoning else None

    @property
    def signature_source(self) -> Optional[str]:
        return self.reasoning.source.value if self.reasoning else None

    @property
    def reasoning_text(self) -> Optional[str]:
        if isinstance(self.reasoning, OpenAISignature):
            return self.reasoning.reasoning_text
        return None

    @property
    def tool_invocations(self) -> Optional[list]:
        if isinstance(self.reasoning, OpenAISignature) and self.reasoning.tool_invocations:
            return list(self.reasoning.tool_invocations)
        return None

    def with_content(self, content: Any) -> "ComposedMessage":
        return ComposedMessage(self.role, content, self.reasoning, self.source_model_id)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "reasoning_signature": self.reasoning_signature,
            "signature_source": self.signature_source,
            "source_model_id": self.source_model_id,
        }
        if self.reasoning_text is not None:
            data["reasoning_text"] = self.reasoning_text
        if self.tool_invocations:
            data["tool_invocations"] = self.tool_invocations
        return data


@dataclass
class ComposeRequest:
    prompts: Mapping[str, Any] = field(default_factory=dict)
    injected_system_messages: Sequence[str] = ()
    page_context: Optional[PageContext] = None
    image_contains_screenshot: bool = False
    regenerate_mode: bool = False
    target_message_id: Optional[str] = None
    conversation_chain: Sequence[Any] = ()
    send_history: bool = True
    # Legacy total-count ceiling; None or negative means the whole chain.
    max_history: Optional[int] = None
    max_user_history: Optional[int] = None
    max_assistant_history: Optional[int] = None


def compose_messages(request: ComposeRequest) -> List[ComposedMessage]:
    """Assemble the ordered role-tagged messages for one request."""
    messages: List[ComposedMessage] = []

    system_content = build_system_message(
        request.prompts,
        request.injected_system_messages,
        request.page_context,
        request.image_contains_screenshot,
    )
    if system_content.strip():
        messages.append(ComposedMessage(role="system", content=system_content))

    chain = _effective_chain(request)

    if request.send_history:
        max_user = normalize_optional_ceiling(request.max_user_history)
        max_assistant = normalize_optional_ceiling(request.max_assistant_history)
        if max_user is not None or max_assistant is not None:
            selected = select_nodes_by_role(chain, max_user, max_assistant)
            messages.extend(node_to_message(node) for node in selected)
        else:
            messages.extend(node_to_message(node) for node in _legacy_window(chain, request.max_history))
    elif chain:
        last = chain[-1]
        messages.append(ComposedMessage(
            role=normalize_role(_field(last, "role")),
            content=_strip_thoughts(_field(last, "content")),
        ))

    # Legacy zero ceiling still has to carry the current user turn.
    if _is_zero(request.max_history) and chain:
        if not any(m.role == "user" for m in messages):
            for node in reversed(chain):
                if normalize_role(_field(node, "role")) == "user":
                    messages.append(node_to_message(node))
                    break

    logger.debug("composed %d messages from a chain of %d", len(messages), len(chain))
    return apply_user_message_spacing(messages)


def build_system_message(
    prompts: Mapping[str, Any],
    injected_system_messages: Optional[Sequence[str]] = None,
    page_context: Optional[PageContext] = None,
    image_contains_screenshot: bool = False,
) -> str:
    content = _system_template(prompts)
    if image_contains_screenshot:
        content += SCREENSHOT_NOTICE
    injected = [m for m in injected_system_messages or [] if isinstance(m, str)]
    if injected:
        content += "\n" + "\n".join(injected)
    if page_context is not None and not page_context.is_empty():
        content += page_context.to_prompt_block()
    return content


def node_to_message(node: Any) -> ComposedMessage:
    """Project a history node into a request message.

    Thought spans are stripped from string content. OpenAI-compatible
    reasoning is only carried on assistant messages and only together with
    its signature.
    """
    role = normalize_role(_field(node, "role"))
    reasoning = _reasoning_of(node)
    if isinstance(reasoning, OpenAISignature) and role != "assistant":
        reasoning = None

    model_id = _field(node, "source_model_id")
    model_id = model_id.strip() if isinstance(model_id, str) and model_id.strip() else None

    return ComposedMessage(
        role=role,
        content=_strip_thoughts(_field(node, "content")),
        reasoning=reasoning,
        source_model_id=model_id,
    )


def apply_user_message_spacing(messages: List[ComposedMessage]) -> List[ComposedMessage]:
    """Prefix consecutive user messages with a Markdown rule so they do not fuse."""
    spaced: List[ComposedMessage] = []
    previous_is_user = False
    for message in messages:
        is_user = message.role == "user"
        if (is_user and previous_is_user and isinstance(message.content, str)
                and not message.content.startswith(USER_MESSAGE_SEPARATOR)):
            message = message.with_content(USER_MESSAGE_SEPARATOR + message.content)
        spaced.append(message)
        previous_is_user = is_user
    return spaced


# ── Helpers ──


def _effective_chain(request: ComposeRequest) -> List[Any]:
    chain = list(request.conversation_chain or [])
    if request.regenerate_mode and request.target_message_id:
        for idx, node in enumerate(chain):
            if _field(node, "id") == request.target_message_id:
                return chain[:idx + 1]
    return chain


def _legacy_window(chain: List[Any], max_history: Any) -> List[Any]:
    if _is_zero(max_history):
        return []
    limit = normalize_optional_ceiling(max_history)
    if limit and _is_positive(max_history):
        return chain[-limit:]
    return chain


def _is_zero(value: Any) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float)) and value == 0


def _is_positive(value: Any) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float)) and value > 0


def _system_template(prompts: Mapping[str, Any]) -> str:
    if not isinstance(prompts, Mapping):
        return ""
    template = prompts.get("system")
    if isinstance(template, PromptTemplate):
        return template.prompt or ""
    if isinstance(template, Mapping):
        text = template.get("prompt")
        return text if isinstance(text, str) else ""
    if isinstance(template, str):
        return template
    return ""


def _strip_thoughts(content: Any) -> Any:
    if not isinstance(content, str):
        return content
    return extract_thinking(content).clean_text


def _reasoning_of(node: Any) -> Optional[ReasoningPayload]:
    if isinstance(node, dict):
        return build_reasoning_payload(
            node.get("reasoning_signature"),
            node.get("signature_source"),
            node.get("reasoning_text"),
            node.get("tool_invocations"),
        )
    return getattr(node, "reasoning", None)


def _field(node: Any, name: str) -> Any:
    if isinstance(node, dict):
        return node.get(name)
    return getattr(node, name, None)
