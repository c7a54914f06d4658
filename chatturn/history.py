"""Conversation tree, reasoning payloads and role-based history selection."""

import logging
import math
import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import SignaturePairingError

__all__ = [
    "SignatureSource",
    "GeminiSignature",
    "OpenAISignature",
    "ReasoningPayload",
    "build_reasoning_payload",
    "ConversationNode",
    "ConversationTree",
    "normalize_role",
    "normalize_optional_ceiling",
    "select_nodes_by_role",
]

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant", "system")
_AI_ROLE_ALIASES = {"ai", "model", "bot"}


class SignatureSource(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"

    @classmethod
    def parse(cls, value: Any) -> Optional["SignatureSource"]:
        if isinstance(value, SignatureSource):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


# ── Reasoning payloads ──


@dataclass(frozen=True)
class GeminiSignature:
    """Gemini thought signature, replayed on the last part of a model turn."""
    signature: str

    source = SignatureSource.GEMINI

    def __post_init__(self):
        if not isinstance(self.signature, str) or not self.signature:
            raise SignaturePairingError(self.source.value, "signature is required")


@dataclass(frozen=True)
class OpenAISignature:
    """OpenAI-compatible message signature and the reasoning it authenticates.

    ``reasoning_text`` must be replayed verbatim, so it is never trimmed.
    """
    signature: str
    reasoning_text: Optional[str] = None
    tool_invocations: Optional[tuple] = None

    source = SignatureSource.OPENAI

    def __post_init__(self):
        if not isinstance(self.signature, str) or not self.signature:
            raise SignaturePairingError(self.source.value, "signature is required")
        if self.reasoning_text is not None and not isinstance(self.reasoning_text, str):
            raise SignaturePairingError(self.source.value, "reasoning text must be a string")
        if self.tool_invocations is not None and not isinstance(self.tool_invocations, tuple):
            object.__setattr__(self, "tool_invocations", tuple(self.tool_invocations))


ReasoningPayload = Union[GeminiSignature, OpenAISignature]


def build_reasoning_payload(
    signature: Any,
    source: Any,
    reasoning_text: Any = None,
    tool_invocations: Any = None,
) -> Optional[ReasoningPayload]:
    """Lenient factory: returns ``None`` instead of raising.

    Without a signature the reasoning text and tool invocations are dropped
    too; they are only ever sent together with the signature.
    """
    if not isinstance(signature, str) or not signature:
        return None
    parsed = SignatureSource.parse(source)
    if parsed is SignatureSource.GEMINI:
        return GeminiSignature(signature)
    if parsed is SignatureSource.OPENAI:
        text = reasoning_text if isinstance(reasoning_text, str) else None
        calls = None
        if isinstance(tool_invocations, (list, tuple)) and tool_invocations:
            calls = tuple(tool_invocations)
        return OpenAISignature(signature, reasoning_text=text, tool_invocations=calls)
    return None


def normalize_role(value: Any) -> str:
    """Map a stored role onto ``user``/``assistant``/``system``.

    AI-meaning aliases become ``assistant``; anything unrecognized is kept as
    ``user`` so the turn is never silently dropped.
    """
    role = value.strip().lower() if isinstance(value, str) else ""
    if role in ROLES:
        return role
    if role in _AI_ROLE_ALIASES:
        return "assistant"
    return "user"


def _new_message_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"msg_{int(time.time() * 1000)}_{suffix}"


# ── Nodes ──


@dataclass
class ConversationNode:
    id: str
    role: str
    content: Any = ""
    reasoning: Optional[ReasoningPayload] = None
    source_model_id: Optional[str] = None
    parent_id: Optional[str] = None
    children: List[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)
    thoughts_raw: str = ""

    def __post_init__(self):
        self.role = normalize_role(self.role)

    @classmethod
    def create(cls, role: str, content: Any = "", parent_id: Optional[str] = None,
               **fields) -> "ConversationNode":
        return cls(id=_new_message_id(), role=role, content=content,
                   parent_id=parent_id, **fields)

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

    def attach_reasoning(self, payload: Optional[ReasoningPayload],
                         source_model_id: Optional[str] = None) -> None:
        self.reasoning = payload
        if source_model_id:
            self.source_model_id = source_model_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "reasoning_signature": self.reasoning_signature,
            "signature_source": self.signature_source,
            "reasoning_text": self.reasoning_text,
            "tool_invocations": self.tool_invocations,
            "source_model_id": self.source_model_id,
            "parent_id": self.parent_id,
            "children": list(self.children),
            "timestamp": self.timestamp,
            "thoughts_raw": self.thoughts_raw,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationNode":
        return cls(
            id=str(data.get("id") or _new_message_id()),
            role=data.get("role", "user"),
            content=data.get("content", ""),
            reasoning=build_reasoning_payload(
                data.get("reasoning_signature"),
                data.get("signature_source"),
                data.get("reasoning_text"),
                data.get("tool_invocations"),
            ),
            source_model_id=data.get("source_model_id"),
            parent_id=data.get("parent_id"),
            children=[str(c) for c in data.get("children") or []],
            timestamp=data.get("timestamp") or time.time(),
            thoughts_raw=data.get("thoughts_raw") or "",
        )


class ConversationTree:
    """Branching chat history with explicit parent links.

    There is no stored "current node": callers pass the leaf of the active
    path into ``chain()``.
    """

    def __init__(self, nodes: Optional[Iterable[ConversationNode]] = None):
        self._nodes: Dict[str, ConversationNode] = {}
        self.root_id: Optional[str] = None
        for node in nodes or []:
            self._nodes[node.id] = node
            if self.root_id is None and node.parent_id is None:
                self.root_id = node.id

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self):
        return iter(self._nodes.values())

    def get(self, node_id: Optional[str]) -> Optional[ConversationNode]:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def append(self, role: str, content: Any = "", parent_id: Optional[str] = None,
               **fields) -> ConversationNode:
        parent = self.get(parent_id)
        node = ConversationNode.create(role, content,
                                       parent_id=parent.id if parent else None, **fields)
        self._nodes[node.id] = node
        if parent is not None:
            parent.children.append(node.id)
        if self.root_id is None:
            self.root_id = node.id
        return node

    def chain(self, leaf_id: Optional[str]) -> List[ConversationNode]:
        """Root-to-leaf path ending at ``leaf_id`` (oldest first)."""
        chain: List[ConversationNode] = []
        seen = set()
        node = self.get(leaf_id)
        while node is not None and node.id not in seen:
            seen.add(node.id)
            chain.append(node)
            node = self.get(node.parent_id)
        chain.reverse()
        return chain

    def latest_leaf(self, from_id: Optional[str] = None) -> Optional[str]:
        node = self.get(from_id if from_id is not None else self.root_id)
        seen = set()
        while node is not None and node.children and node.id not in seen:
            seen.add(node.id)
            nxt = self.get(node.children[-1])
            if nxt is None:
                break
            node = nxt
        return node.id if node else None

    def delete(self, node_id: str) -> bool:
        """Remove a node, handing its children to its parent."""
        node = self._nodes.get(node_id)
        if node is None:
            return False

        parent = self.get(node.parent_id)
        if parent is not None:
            parent.children = [c for c in parent.children if c != node_id]
            for child_id in node.children:
                child = self.get(child_id)
                if child is not None:
                    child.parent_id = parent.id
                    parent.children.append(child.id)
        else:
            for child_id in node.children:
                child = self.get(child_id)
                if child is not None:
                    child.parent_id = None
            if self.root_id == node_id:
                self.root_id = None
                for child_id in node.children:
                    if child_id in self._nodes:
                        self.root_id = child_id
                        break

        del self._nodes[node_id]
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root_id,
            "messages": [node.to_dict() for node in self._nodes.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationTree":
        tree = cls(ConversationNode.from_dict(m) for m in data.get("messages") or []
                   if isinstance(m, dict))
        root = data.get("root")
        if root in tree:
            tree.root_id = root
        return tree


# ── History selection ──


def normalize_optional_ceiling(value: Any) -> Optional[int]:
    """Coerce a ceiling to a non-negative int; ``None`` means unbounded."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return max(0, int(math.floor(number)))


def select_nodes_by_role(
    chain: Iterable[Any],
    max_user: Any = None,
    max_assistant: Any = None,
) -> List[Any]:
    """Pick history nodes newest-first with independent per-role ceilings.

    System nodes are always kept and never counted. The most recent user
    node is always included, even with a user ceiling of zero. The result
    keeps the chain's original order.
    """
    nodes = list(chain or [])
    user_limit = normalize_optional_ceiling(max_user)
    assistant_limit = normalize_optional_ceiling(max_assistant)
    both_bounded = user_limit is not None and assistant_limit is not None

    user_count = 0
    assistant_count = 0
    selected = set()

    for idx in range(len(nodes) - 1, -1, -1):
        role = normalize_role(_role_of(nodes[idx]))
        if role == "user":
            if user_limit is None or user_count < user_limit:
                selected.add(idx)
                user_count += 1
        elif role == "assistant":
            if assistant_limit is None or assistant_count < assistant_limit:
                selected.add(idx)
                assistant_count += 1
        else:
            selected.add(idx)

        if both_bounded and user_count >= user_limit and assistant_count >= assistant_limit:
            break

    for idx in range(len(nodes) - 1, -1, -1):
        if normalize_role(_role_of(nodes[idx])) == "user":
            if idx not in selected:
                logger.debug("forcing latest user node at index %d into history", idx)
                selected.add(idx)
            break

    return [nodes[idx] for idx in sorted(selected)]


def _role_of(node: Any) -> Any:
    if isinstance(node, dict):
        return node.get("role")
    return getattr(node, "role", None)
