"""Prompt templates: model preference, time placeholders and URL rules."""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional

__all__ = [
    "FOLLOW_CURRENT_MODEL",
    "PromptTemplate",
    "PromptsConfig",
    "prompts_from_mapping",
    "resolve_prompt_model",
    "replace_placeholders",
    "match_url_rule",
]

FOLLOW_CURRENT_MODEL = "follow_current"

_DATETIME_RE = re.compile(r"{{\s*datetime\s*}}")
_DATE_RE = re.compile(r"{{\s*date\s*}}")
_TIME_RE = re.compile(r"{{\s*time\s*}}")


@dataclass(frozen=True)
class PromptTemplate:
    prompt: str = ""
    model: str = FOLLOW_CURRENT_MODEL


PromptsConfig = Mapping[str, PromptTemplate]


def prompts_from_mapping(raw: Any) -> Dict[str, PromptTemplate]:
    """Build a prompts config from plain dicts such as a parsed YAML file."""
    prompts: Dict[str, PromptTemplate] = {}
    if not isinstance(raw, Mapping):
        return prompts
    for kind, item in raw.items():
        if isinstance(item, PromptTemplate):
            prompts[str(kind)] = item
        elif isinstance(item, str):
            prompts[str(kind)] = PromptTemplate(prompt=item)
        elif isinstance(item, Mapping):
            text = item.get("prompt")
            model = item.get("model")
            prompts[str(kind)] = PromptTemplate(
                prompt=text if isinstance(text, str) else "",
                model=model.strip() if isinstance(model, str) and model.strip() else FOLLOW_CURRENT_MODEL,
            )
    return prompts


def resolve_prompt_model(template: Optional[PromptTemplate], current_model: str) -> str:
    if template is None or not template.model or template.model == FOLLOW_CURRENT_MODEL:
        return current_model
    return template.model


def replace_placeholders(text: Any, now: Optional[datetime] = None) -> Any:
    """Fill ``{{datetime}}``, ``{{date}}`` and ``{{time}}`` with local time."""
    if not isinstance(text, str):
        return text
    now = now or datetime.now().astimezone()
    if now.tzinfo is None:
        now = now.astimezone()
    text = _DATETIME_RE.sub(lambda _: now.isoformat(timespec="seconds"), text)
    text = _DATE_RE.sub(lambda _: now.strftime("%Y-%m-%d"), text)
    return _TIME_RE.sub(lambda _: now.strftime("%H:%M:%S"), text)


def match_url_rule(url: str, kind: str, rules: Iterable[Any]) -> Optional[str]:
    """Return the prompt of the last glob rule of ``kind`` matching ``url``.

    Rules look like ``{"pattern": "https://example.com/*", "type": "system",
    "prompt": "..."}``; rules added later win.
    """
    if not url or rules is None:
        return None
    for rule in reversed(list(rules)):
        if not isinstance(rule, Mapping) or rule.get("type") != kind or not rule.get("pattern"):
            continue
        regex = re.compile("^" + _glob_to_regex(str(rule["pattern"])) + "$")
        if regex.match(url):
            return rule.get("prompt") or ""
    return None


def _glob_to_regex(pattern: str) -> str:
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return "".join(parts)
