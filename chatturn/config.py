"""
Configuration: history ceilings, streaming and signature settings, model presets.

Loading priority:
  1. Project dir .chatturn.yml
  2. Git root .chatturn.yml
  3. Global ~/.chatturn/config.yml

Environment variables (CHATTURN_*) override file values; .env files are
loaded first without overriding the real environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv

from .errors import ConfigError
from .logger import get_logger

logger = get_logger(__name__)

CONFIG_DIR = Path.home() / ".chatturn"
CONFIG_FILE = CONFIG_DIR / "config.yml"
PROJECT_CONFIG_NAME = ".chatturn.yml"

API_FAMILIES = {"openai", "genai"}


# ── Configuration metadata and validation ──


@dataclass
class ConfigFieldSpec:
    """Configuration field specification with validation rules."""
    key: str
    field_name: str
    description: str
    value_type: str  # "str", "int", "bool", "ceiling"
    default: Any
    validator: Optional[Callable[[Any], Tuple[bool, Any, str]]] = None  # (valid, coerced_value, error_msg)


def _validate_int_range(value: Any, min_val: int, max_val: int) -> Tuple[bool, int, str]:
    """Validate integer within range."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return False, 0, "Must be an integer"
    if parsed < min_val or parsed > max_val:
        return False, max(min_val, min(max_val, parsed)), f"Must be between {min_val} and {max_val}"
    return True, parsed, ""


def _validate_bool(value: Any) -> Tuple[bool, bool, str]:
    """Validate boolean value."""
    if isinstance(value, bool):
        return True, value, ""
    if isinstance(value, str):
        val_lower = value.strip().lower()
        if val_lower in ("1", "true", "yes", "on"):
            return True, True, ""
        if val_lower in ("0", "false", "no", "off"):
            return True, False, ""
    return False, False, "Must be true/false, yes/no, on/off, or 1/0"


def _validate_ceiling(value: Any) -> Tuple[bool, Optional[int], str]:
    """Validate a history ceiling: a non-negative integer, or empty for unbounded."""
    if value is None:
        return True, None, ""
    if isinstance(value, str):
        stripped = value.strip().lower()
        if stripped in ("", "none", "null", "unlimited", "all"):
            return True, None, ""
        value = stripped
    if isinstance(value, bool):
        return False, None, "Must be a non-negative integer or empty"
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return False, None, "Must be a non-negative integer or empty"
    if parsed < 0:
        return False, 0, "Must be a non-negative integer or empty"
    return True, parsed, ""


CONFIG_FIELDS: Dict[str, ConfigFieldSpec] = {
    "active-model": ConfigFieldSpec(
        key="active-model",
        field_name="active_model",
        description="Currently active model preset name",
        value_type="str",
        default="local",
        validator=None,  # Validated against available models separately
    ),
    "send-history": ConfigFieldSpec(
        key="send-history",
        field_name="send_history",
        description="Send prior turns with each request (off sends only the latest turn)",
        value_type="bool",
        default=True,
        validator=_validate_bool,
    ),
    "max-history": ConfigFieldSpec(
        key="max-history",
        field_name="max_history",
        description="Legacy total history ceiling (empty for all, 0 for none)",
        value_type="ceiling",
        default=None,
        validator=_validate_ceiling,
    ),
    "max-user-history": ConfigFieldSpec(
        key="max-user-history",
        field_name="max_user_history",
        description="Maximum user turns to send (empty for unbounded)",
        value_type="ceiling",
        default=None,
        validator=_validate_ceiling,
    ),
    "max-assistant-history": ConfigFieldSpec(
        key="max-assistant-history",
        field_name="max_assistant_history",
        description="Maximum assistant turns to send (empty for unbounded)",
        value_type="ceiling",
        default=None,
        validator=_validate_ceiling,
    ),
    "use-streaming": ConfigFieldSpec(
        key="use-streaming",
        field_name="use_streaming",
        description="Stream responses (toggle used by the genai family)",
        value_type="bool",
        default=True,
        validator=_validate_bool,
    ),
    "send-signatures": ConfigFieldSpec(
        key="send-signatures",
        field_name="send_signatures",
        description="Replay stored reasoning signatures to compatible models",
        value_type="bool",
        default=True,
        validator=_validate_bool,
    ),
    "stream-overlap-window": ConfigFieldSpec(
        key="stream-overlap-window",
        field_name="stream_overlap_window",
        description="Characters searched when de-duplicating streamed reasoning deltas",
        value_type="int",
        default=256,
        validator=lambda v: _validate_int_range(v, 1, 8192),
    ),
    "verbose": ConfigFieldSpec(
        key="verbose",
        field_name="verbose",
        description="Enable debug logging",
        value_type="bool",
        default=False,
        validator=_validate_bool,
    ),
}


def validate_config_value(key: str, value: Any) -> Tuple[bool, Any, str]:
    """
    Validate a configuration value.

    Returns:
        (is_valid, coerced_value, error_message)
    """
    if key not in CONFIG_FIELDS:
        return False, value, f"Unknown configuration key: {key}"

    spec = CONFIG_FIELDS[key]
    if spec.validator:
        return spec.validator(value)
    if spec.value_type == "str":
        return True, str(value), ""
    return True, value, ""


@dataclass
class ModelPreset:
    name: str
    model: str
    api_family: str = "openai"
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 4096
    description: str = ""
    custom_system_prompt: str = ""

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        env_var = "GEMINI_API_KEY" if self.api_family == "genai" else "OPENAI_API_KEY"
        return os.environ.get(env_var)

    def get_llm_kwargs(self) -> dict:
        """Return kwargs dict for the LLMAdapter constructor (no env vars)."""
        return {
            "model": self.model,
            "api_family": self.api_family,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "api_base": self.api_base,
            "api_key": self.resolve_api_key(),
            "custom_system_prompt": self.custom_system_prompt,
        }


@dataclass
class Config:
    active_model: str = "local"
    models: Dict[str, ModelPreset] = field(default_factory=dict)
    send_history: bool = True
    max_history: Optional[int] = None
    max_user_history: Optional[int] = None
    max_assistant_history: Optional[int] = None
    use_streaming: bool = True
    send_signatures: bool = True
    stream_overlap_window: int = 256
    verbose: bool = False
    _config_source: str = ""

    @classmethod
    def load(cls, project_dir: str = ".") -> "Config":
        config = cls()
        project_path = Path(project_dir).resolve()

        for env_path in [CONFIG_DIR / ".env", project_path / ".env"]:
            if env_path.exists():
                load_dotenv(env_path, override=False)

        git_root = cls._find_git_root(project_path)
        config_loaded = False
        for candidate in [
            project_path / PROJECT_CONFIG_NAME,
            (git_root / PROJECT_CONFIG_NAME) if git_root and git_root != project_path else None,
            CONFIG_FILE,
        ]:
            if candidate and candidate.exists():
                config._load_yaml(candidate)
                config._config_source = str(candidate)
                config_loaded = True
                break

        if not config_loaded:
            config._add_default_presets()
            config._config_source = str(project_path / PROJECT_CONFIG_NAME)

        config._apply_env()
        return config

    @staticmethod
    def _find_git_root(path: Path) -> Optional[Path]:
        for candidate in [path, *path.parents]:
            if (candidate / ".git").exists():
                return candidate
        return None

    @classmethod
    def get_default_presets(cls) -> Dict[str, ModelPreset]:
        return {
            "local": ModelPreset(
                name="local", model="openai/model",
                api_base="http://localhost:8080/v1", api_key="not-needed",
                description="Local OpenAI-compatible server on :8080",
            ),
            "gpt-4o-mini": ModelPreset(
                name="gpt-4o-mini", model="openai/gpt-4o-mini",
                api_key_env="OPENAI_API_KEY",
                description="OpenAI GPT-4o mini",
            ),
            "gemini-flash": ModelPreset(
                name="gemini-flash", model="gemini/gemini-2.5-flash",
                api_family="genai", api_key_env="GEMINI_API_KEY",
                description="Gemini 2.5 Flash (thought signatures)",
                temperature=1.0,
            ),
        }

    def _add_default_presets(self):
        self.models = self.get_default_presets()
        self.active_model = "local"

    def _load_yaml(self, filepath: Path):
        try:
            with open(filepath, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("could not read %s: %s", filepath, e)
            self._add_default_presets()
            return
        if not isinstance(data, dict):
            self._add_default_presets()
            return

        for key, spec in CONFIG_FIELDS.items():
            if key not in data:
                continue
            ok, coerced, error = validate_config_value(key, data[key])
            if ok:
                setattr(self, spec.field_name, coerced)
            else:
                logger.warning("ignoring %s=%r in %s: %s", key, data[key], filepath, error)

        self.models = {}
        models = data.get("models") or {}
        if isinstance(models, dict):
            for name, m in models.items():
                if not isinstance(m, dict):
                    continue
                family = str(m.get("api-family", "openai")).strip().lower()
                self.models[name] = ModelPreset(
                    name=name,
                    model=m.get("model", "openai/gpt-4o-mini"),
                    api_family=family if family in API_FAMILIES else "openai",
                    api_base=m.get("api-base"), api_key=m.get("api-key"),
                    api_key_env=m.get("api-key-env"),
                    temperature=m.get("temperature", 0.0),
                    max_tokens=m.get("max-tokens", 4096),
                    description=m.get("description", ""),
                    custom_system_prompt=str(m.get("custom-system-prompt") or "").strip(),
                )
        if not self.models:
            self._add_default_presets()

    def _apply_env(self):
        env_map = {
            "CHATTURN_MODEL": "active-model",
            "CHATTURN_SEND_HISTORY": "send-history",
            "CHATTURN_MAX_HISTORY": "max-history",
            "CHATTURN_MAX_USER_HISTORY": "max-user-history",
            "CHATTURN_MAX_ASSISTANT_HISTORY": "max-assistant-history",
            "CHATTURN_USE_STREAMING": "use-streaming",
            "CHATTURN_VERBOSE": "verbose",
        }
        for env_var, key in env_map.items():
            val = os.environ.get(env_var)
            if val is None:
                continue
            ok, coerced, _ = validate_config_value(key, val)
            if ok:
                setattr(self, CONFIG_FIELDS[key].field_name, coerced)

    def set_value(self, key: str, value: Any) -> None:
        ok, coerced, error = validate_config_value(key, value)
        if not ok:
            raise ConfigError(key, error)
        if key == "active-model" and coerced not in self.models:
            raise ConfigError(key, f"no model preset named {coerced!r}")
        setattr(self, CONFIG_FIELDS[key].field_name, coerced)

    def get_active_preset(self) -> ModelPreset:
        if self.active_model in self.models:
            return self.models[self.active_model]
        if self.models:
            return next(iter(self.models.values()))
        return self.get_default_presets()["local"]

    def compose_limits(self) -> Dict[str, Any]:
        """History settings in the shape ``ComposeRequest`` expects."""
        return {
            "send_history": self.send_history,
            "max_history": self.max_history,
            "max_user_history": self.max_user_history,
            "max_assistant_history": self.max_assistant_history,
        }

    def save(self, filepath: Optional[str] = None):
        target = Path(filepath) if filepath else (
            Path(self._config_source) if self._config_source else CONFIG_FILE
        )
        target.parent.mkdir(parents=True, exist_ok=True)

        data: Dict[str, Any] = {
            key: getattr(self, spec.field_name) for key, spec in CONFIG_FIELDS.items()
        }
        data["models"] = {}
        for name, p in self.models.items():
            entry: Dict[str, Any] = {
                "model": p.model,
                "api-family": p.api_family,
                "temperature": p.temperature,
                "max-tokens": p.max_tokens,
                "description": p.description,
            }
            if p.api_base:
                entry["api-base"] = p.api_base
            if p.api_key:
                entry["api-key"] = p.api_key
            if p.api_key_env:
                entry["api-key-env"] = p.api_key_env
            if p.custom_system_prompt:
                entry["custom-system-prompt"] = p.custom_system_prompt
            data["models"][name] = entry

        with open(target, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        self._config_source = str(target)
