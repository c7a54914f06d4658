"""Serialize composed messages for OpenAI-compatible and Gemini endpoints.

Reasoning signatures are opaque provider tokens. Replaying one to a model
of a different family makes the provider reject the whole request, so each
historical message is checked on its own before its signature is sent.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from .composer import ComposedMessage
from .history import GeminiSignature, OpenAISignature

__all__ = [
    "is_signature_compatible",
    "detect_model_family",
    "build_openai_messages",
    "build_gemini_contents",
]

logger = logging.getLogger(__name__)

_KNOWN_FAMILIES = ("claude", "gemini")

_DATA_URL_RE = re.compile(r"^data:(image/(?:jpeg|png|gif|webp));base64,(.*)$", re.DOTALL)


def _normalize_model_id(value: Any) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def detect_model_family(model_id: Any) -> str:
    normalized = _normalize_model_id(model_id)
    for family in _KNOWN_FAMILIES:
        if family in normalized:
            return family
    return ""


def is_signature_compatible(message_model_id: Any, current_model_id: Any) -> bool:
    """Whether a signature recorded under one model may be replayed to another.

    Known families (claude, gemini) match by family; everything else needs an
    exact id match. A missing id on either side never matches.
    """
    msg_id = _normalize_model_id(message_model_id)
    cur_id = _normalize_model_id(current_model_id)
    if not msg_id or not cur_id:
        return False
    msg_family = detect_model_family(msg_id)
    cur_family = detect_model_family(cur_id)
    if msg_family and cur_family:
        return msg_family == cur_family
    return msg_id == cur_id


def build_openai_messages(
    messages: Sequence[ComposedMessage],
    model_id: str,
    send_signatures: bool = True,
    custom_system_prompt: str = "",
) -> List[Dict[str, Any]]:
    """OpenAI-compatible ``messages`` list, as accepted by litellm."""
    result: List[Dict[str, Any]] = []
    dropped = 0
    for msg in _with_custom_system_prompt(messages, custom_system_prompt):
        entry: Dict[str, Any] = {"role": msg.role, "content": _openai_content(msg.content)}
        payload = msg.reasoning
        if isinstance(payload, OpenAISignature) and msg.role == "assistant":
            if send_signatures and is_signature_compatible(msg.source_model_id, model_id):
                entry["thought_signature"] = payload.signature
                if payload.reasoning_text is not None:
                    entry["reasoning_content"] = payload.reasoning_text
                if payload.tool_invocations:
                    entry["tool_calls"] = list(payload.tool_invocations)
            else:
                dropped += 1
        result.append(entry)
    if dropped:
        logger.debug("withheld %d reasoning signature(s) not replayable to %s", dropped, model_id)
    return result


def build_gemini_contents(
    messages: Sequence[ComposedMessage],
    model_id: str,
    send_signatures: bool = True,
    custom_system_prompt: str = "",
) -> Dict[str, Any]:
    """Gemini ``contents`` plus a merged ``systemInstruction``.

    ``image_url`` items holding base64 data URLs become ``inline_data``
    parts; other image references are skipped with a warning.
    """
    contents: List[Dict[str, Any]] = []
    system_parts: List[Dict[str, Any]] = []

    for msg in _with_custom_system_prompt(messages, custom_system_prompt):
        parts = _gemini_parts(msg.content)
        if msg.role == "system":
            system_parts.extend(p for p in parts if p.get("text", "").strip())
            continue
        if not parts:
            logger.warning("dropping %s message with no sendable parts", msg.role)
            continue
        role = "model" if msg.role == "assistant" else msg.role
        payload = msg.reasoning
        if (isinstance(payload, GeminiSignature) and role == "model" and send_signatures
                and is_signature_compatible(msg.source_model_id, model_id)):
            parts[-1]["thought_signature"] = payload.signature
        contents.append({"role": role, "parts": parts})

    body: Dict[str, Any] = {"contents": contents}
    if system_parts:
        body["systemInstruction"] = {"parts": system_parts}
    return body


def _with_custom_system_prompt(messages: Sequence[ComposedMessage],
                               custom_system_prompt: str) -> List[ComposedMessage]:
    custom = (custom_system_prompt or "").strip()
    items = list(messages)
    if not custom:
        return items
    for idx, msg in enumerate(items):
        if msg.role == "system":
            current = msg.content if isinstance(msg.content, str) else ""
            items[idx] = msg.with_content(f"{custom}\n{current}".strip())
            return items
    return [ComposedMessage(role="system", content=custom)] + items


def _openai_content(content: Any) -> Any:
    if isinstance(content, list):
        parts = []
        for item in content:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "text":
                parts.append({"type": "text", "text": item.get("text", "")})
            elif item.get("type") == "image_url" and item.get("image_url"):
                parts.append({"type": "image_url", "image_url": item["image_url"]})
        return parts
    return content if content is not None else ""


def _inline_data_part(image_url: Any) -> Optional[Dict[str, Any]]:
    url = image_url.get("url") if isinstance(image_url, dict) else image_url
    if not isinstance(url, str) or not url:
        return None
    match = _DATA_URL_RE.match(url)
    if match is None:
        logger.warning("unsupported image reference for Gemini: %s...", url[:48])
        return None
    return {"inline_data": {"mime_type": match.group(1), "data": match.group(2)}}


def _gemini_parts(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, str):
        return [{"text": content}]
    parts: List[Dict[str, Any]] = []
    if isinstance(content, list):
        for item in content:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "text" and isinstance(item.get("text"), str):
                parts.append({"text": item["text"]})
            elif item.get("type") == "image_url":
                inline = _inline_data_part(item.get("image_url"))
                if inline is not None:
                    parts.append(inline)
    return parts
