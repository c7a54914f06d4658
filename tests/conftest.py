"""Shared fixtures for chatturn tests."""

import logging
import os

import pytest
import yaml

from chatturn.history import ConversationNode, build_reasoning_payload


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """Undo CLI logger setup so caplog sees package records."""
    yield
    pkg_logger = logging.getLogger("chatturn")
    for handler in list(pkg_logger.handlers):
        pkg_logger.removeHandler(handler)
        handler.close()
    pkg_logger.propagate = True
    pkg_logger.setLevel(logging.NOTSET)


@pytest.fixture
def tmp_dir(tmp_path, monkeypatch):
    """Provide a temporary directory, cd into it and hide the global config."""
    orig = os.getcwd()
    os.chdir(tmp_path)
    monkeypatch.setattr("chatturn.config.CONFIG_DIR", tmp_path / "home")
    monkeypatch.setattr("chatturn.config.CONFIG_FILE", tmp_path / "home" / "config.yml")
    for var in ("CHATTURN_MODEL", "CHATTURN_SEND_HISTORY", "CHATTURN_MAX_HISTORY",
                "CHATTURN_MAX_USER_HISTORY", "CHATTURN_MAX_ASSISTANT_HISTORY",
                "CHATTURN_USE_STREAMING", "CHATTURN_VERBOSE", "CHATTURN_LOG_FILE"):
        monkeypatch.delenv(var, raising=False)
    yield tmp_path
    os.chdir(orig)


@pytest.fixture
def sample_config_data():
    """Minimal .chatturn.yml data dict."""
    return {
        "active-model": "local",
        "send-history": True,
        "max-history": None,
        "max-user-history": 4,
        "max-assistant-history": 2,
        "use-streaming": True,
        "send-signatures": True,
        "stream-overlap-window": 128,
        "verbose": False,
        "models": {
            "local": {
                "model": "openai/model",
                "api-family": "openai",
                "description": "Local test model",
                "temperature": 0.0,
                "max-tokens": 2048,
                "api-base": "http://localhost:8080/v1",
                "api-key": "not-needed",
            },
            "flash": {
                "model": "gemini/gemini-2.5-flash",
                "api-family": "genai",
                "api-key-env": "GEMINI_API_KEY",
                "custom-system-prompt": "  Answer in English. ",
            },
        },
    }


@pytest.fixture
def config_yaml_file(tmp_dir, sample_config_data):
    """Write a config YAML to tmp_dir and return its Path."""
    path = tmp_dir / ".chatturn.yml"
    with open(path, "w") as f:
        yaml.dump(sample_config_data, f, default_flow_style=False)
    return path


def make_node(node_id, role, content="", signature=None, source=None,
              reasoning_text=None, tool_invocations=None, model=None):
    return ConversationNode(
        id=node_id,
        role=role,
        content=content,
        reasoning=build_reasoning_payload(signature, source, reasoning_text, tool_invocations),
        source_model_id=model,
    )


@pytest.fixture
def node_factory():
    return make_node


@pytest.fixture
def alternating_chain():
    """u1 a1 u2 a2 u3 a3 u4 (oldest first)."""
    chain = []
    for i in range(1, 5):
        chain.append(make_node(f"u{i}", "user", f"question {i}"))
        if i < 4:
            chain.append(make_node(f"a{i}", "assistant", f"answer {i}"))
    return chain
