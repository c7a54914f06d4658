"""Thinking-span extraction and reasoning text merging."""

import logging
import re
from dataclasses import dataclass
from typing import Any, Tuple

__all__ = [
    "THINK_OPEN_TAG",
    "THINK_CLOSE_TAG",
    "DEFAULT_MAX_OVERLAP",
    "ThinkingExtraction",
    "StreamingMerge",
    "ThinkTagSplitter",
    "extract_thinking",
    "merge_thoughts",
    "merge_streaming_thoughts",
    "merge_streaming_thoughts_ex",
]

logger = logging.getLogger(__name__)

THINK_OPEN_TAG = "<think>"
THINK_CLOSE_TAG = "</think>"
DEFAULT_MAX_OVERLAP = 256
THOUGHT_SEPARATOR = "\n\n"

_THINK_SPAN_RE = re.compile(r"<think>([\s\S]*?)</think>", re.IGNORECASE)


@dataclass(frozen=True)
class ThinkingExtraction:
    clean_text: Any
    thought_text: str = ""


@dataclass(frozen=True)
class StreamingMerge:
    """Result of a streaming merge plus the strategy that produced it.

    ``strategy`` is one of ``empty``, ``replace``, ``overlap`` or ``append``.
    """
    text: str
    strategy: str


def extract_thinking(raw_text: Any) -> ThinkingExtraction:
    """Strip every ``<think>...</think>`` span out of ``raw_text``.

    Captured spans are trimmed and joined with a blank line. Text without
    spans (or a non-string value) comes back unchanged with no thought text.
    """
    if not isinstance(raw_text, str):
        return ThinkingExtraction(clean_text=raw_text)

    thoughts = []
    for match in _THINK_SPAN_RE.finditer(raw_text):
        captured = match.group(1).strip()
        if captured:
            thoughts.append(captured)

    if not thoughts:
        return ThinkingExtraction(clean_text=raw_text)

    clean_text = _THINK_SPAN_RE.sub("", raw_text).lstrip()
    return ThinkingExtraction(
        clean_text=clean_text,
        thought_text=THOUGHT_SEPARATOR.join(thoughts).strip(),
    )


def merge_thoughts(existing: Any, incoming: Any) -> str:
    """Union of two complete thought summaries that never duplicates content."""
    current = existing.strip() if isinstance(existing, str) else ""
    extra = incoming.strip() if isinstance(incoming, str) else ""

    if not extra:
        return current
    if not current:
        return extra
    if extra in current:
        return current
    if current in extra:
        return extra
    return f"{current}{THOUGHT_SEPARATOR}{extra}"


def merge_streaming_thoughts_ex(existing: Any, incoming: Any,
                                max_overlap: int = DEFAULT_MAX_OVERLAP) -> StreamingMerge:
    """Merge one streamed reasoning delta into the accumulated text.

    ``incoming`` may be a pure delta, a cumulative re-send of everything so
    far, or a delta that repeats the tail of ``existing``. Whitespace is kept
    as-is and no separator is ever inserted: the result renders as prose.
    """
    prev = existing if isinstance(existing, str) else ""
    nxt = incoming if isinstance(incoming, str) else ""

    if not prev:
        return StreamingMerge(nxt, "empty")
    if not nxt:
        return StreamingMerge(prev, "empty")

    if nxt.startswith(prev):
        return StreamingMerge(nxt, "replace")

    try:
        window = max(0, int(max_overlap))
    except (TypeError, ValueError):
        window = DEFAULT_MAX_OVERLAP
    cap = min(len(prev), len(nxt), window)
    for length in range(cap, 0, -1):
        if prev.endswith(nxt[:length]):
            return StreamingMerge(prev + nxt[length:], "overlap")

    # Plain append. A delta that already occurs in the accumulated text, or a
    # search cut short by the window, may duplicate a boundary.
    if len(nxt) > 1 and (nxt in prev or min(len(prev), len(nxt)) > window):
        logger.debug(
            "streaming merge fell back to append (existing=%d chars, incoming=%d chars, window=%d)",
            len(prev), len(nxt), window,
        )
    return StreamingMerge(prev + nxt, "append")


def merge_streaming_thoughts(existing: Any, incoming: Any,
                             max_overlap: int = DEFAULT_MAX_OVERLAP) -> str:
    return merge_streaming_thoughts_ex(existing, incoming, max_overlap).text


class ThinkTagSplitter:
    """Split streamed answer deltas into answer text and inline thinking.

    Tags may arrive split across chunks (``"<thi"`` + ``"nk>"``), so any
    trailing text that could still become a tag is held back until the next
    ``feed()`` or ``flush()``.
    """

    def __init__(self):
        self.in_thinking = False
        self._pending = ""

    def feed(self, delta: str) -> Tuple[str, str]:
        if not delta:
            return "", ""
        self._pending += delta
        answer_parts = []
        thought_parts = []

        while self._pending:
            tag = THINK_CLOSE_TAG if self.in_thinking else THINK_OPEN_TAG
            target = thought_parts if self.in_thinking else answer_parts
            idx = self._pending.lower().find(tag)
            if idx != -1:
                target.append(self._pending[:idx])
                self._pending = self._pending[idx + len(tag):]
                self.in_thinking = not self.in_thinking
                continue

            hold = _partial_tag_suffix(self._pending, tag)
            target.append(self._pending[:len(self._pending) - hold])
            self._pending = self._pending[len(self._pending) - hold:]
            break

        return "".join(answer_parts), "".join(thought_parts)

    def flush(self) -> Tuple[str, str]:
        """Release held text at end of stream."""
        rest, self._pending = self._pending, ""
        if self.in_thinking:
            return "", rest
        return rest, ""


def _partial_tag_suffix(text: str, tag: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``tag``."""
    lowered = text.lower()
    for length in range(min(len(tag) - 1, len(text)), 0, -1):
        if lowered.endswith(tag[:length]):
            return length
    return 0
