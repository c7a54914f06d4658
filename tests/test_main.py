"""CLI tests using click's CliRunner."""

import json
from types import SimpleNamespace

import litellm
import pytest
import yaml
from click.testing import CliRunner

from chatturn.main import cli, load_conversation_file


@pytest.fixture
def conversation_file(tmp_dir):
    data = {
        "prompts": {"system": "Be helpful. Today is {{date}}."},
        "page": {"title": "Docs", "url": "https://example.com", "content": "Body"},
        "messages": [
            {"id": "u1", "role": "user", "content": "first"},
            {"id": "a1", "role": "assistant", "content": "<think>hmm</think>reply",
             "reasoning_signature": "sig", "signature_source": "openai",
             "reasoning_text": "hmm", "source_model_id": "gpt-4o"},
            {"id": "u2", "role": "user", "content": "second"},
        ],
    }
    path = tmp_dir / "conversation.yml"
    with open(path, "w") as f:
        yaml.safe_dump(data, f)
    return path


def _compose(tmp_dir, *args):
    runner = CliRunner()
    result = runner.invoke(cli, ["--project-dir", str(tmp_dir), "compose", *args, "--json"])
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestLoadConversationFile:

    def test_linear_messages_chained(self, conversation_file):
        tree, leaf, data = load_conversation_file(conversation_file)
        assert leaf == "u2"
        assert [n.id for n in tree.chain(leaf)] == ["u1", "a1", "u2"]
        assert tree.get("a1").reasoning_text == "hmm"
        assert data["page"]["title"] == "Docs"

    def test_tree_with_active_branch(self, tmp_dir):
        path = tmp_dir / "tree.json"
        path.write_text(json.dumps({
            "active": "a1",
            "messages": [
                {"id": "u1", "role": "user", "content": "q", "parent_id": None},
                {"id": "a1", "role": "assistant", "content": "one", "parent_id": "u1"},
                {"id": "a2", "role": "assistant", "content": "two", "parent_id": "u1"},
            ],
        }))
        tree, leaf, _ = load_conversation_file(path)
        assert leaf == "a1"
        assert tree.get("u1").children == ["a1", "a2"]
        assert tree.latest_leaf() == "a2"

    def test_bare_list(self, tmp_dir):
        path = tmp_dir / "list.yml"
        path.write_text("- role: user\n  content: hi\n- role: ai\n  content: yo\n")
        tree, leaf, _ = load_conversation_file(path)
        assert [n.role for n in tree.chain(leaf)] == ["user", "assistant"]


class TestComposeCommand:

    def test_full_history(self, tmp_dir, conversation_file):
        messages = _compose(tmp_dir, str(conversation_file))
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        system = messages[0]["content"]
        assert system.startswith("Be helpful. Today is 2")
        assert "{{date}}" not in system
        assert "Current page content:\nTitle: Docs" in system
        assert messages[2]["content"] == "reply"
        assert messages[2]["reasoning_signature"] == "sig"
        assert messages[2]["reasoning_text"] == "hmm"

    def test_role_ceilings(self, tmp_dir, conversation_file):
        messages = _compose(tmp_dir, str(conversation_file), "--max-user", "1", "--max-assistant", "0")
        assert [m["content"] for m in messages[1:]] == ["second"]

    def test_ceilings_from_project_config(self, tmp_dir, conversation_file):
        (tmp_dir / ".chatturn.yml").write_text("max-user-history: 1\nmax-assistant-history: 1\n")
        messages = _compose(tmp_dir, str(conversation_file))
        assert [m["content"] for m in messages[1:]] == ["reply", "second"]

    def test_regenerate(self, tmp_dir, conversation_file):
        messages = _compose(tmp_dir, str(conversation_file), "--regenerate", "a1")
        assert [m["role"] for m in messages] == ["system", "user", "assistant"]

    def test_no_history(self, tmp_dir, conversation_file):
        messages = _compose(tmp_dir, str(conversation_file), "--no-history")
        assert [m["content"] for m in messages[1:]] == ["second"]

    def test_system_prompt_override(self, tmp_dir, conversation_file):
        messages = _compose(tmp_dir, str(conversation_file), "--system-prompt", "Terse.")
        assert messages[0]["content"].startswith("Terse.")

    def test_url_rule_replaces_system_template(self, tmp_dir, conversation_file):
        data = yaml.safe_load(conversation_file.read_text())
        data["url_rules"] = [
            {"pattern": "https://example.com*", "type": "system", "prompt": "Docs mode."},
            {"pattern": "https://other.org/*", "type": "system", "prompt": "Other."},
        ]
        conversation_file.write_text(yaml.safe_dump(data))
        messages = _compose(tmp_dir, str(conversation_file))
        assert messages[0]["content"].startswith("Docs mode.\n\nCurrent page content:")

    def test_log_file_option(self, tmp_dir, conversation_file):
        log_path = tmp_dir / "logs" / "run.log"
        result = CliRunner().invoke(cli, ["--project-dir", str(tmp_dir), "--log-file", str(log_path),
                                          "compose", str(conversation_file), "--json"])
        assert result.exit_code == 0, result.output
        assert log_path.exists()

    def test_table_output(self, tmp_dir, conversation_file):
        result = CliRunner().invoke(cli, ["--project-dir", str(tmp_dir), "compose",
                                          str(conversation_file)])
        assert result.exit_code == 0, result.output
        assert "second" in result.output
        assert "openai" in result.output


def _stream(*chunks):
    def completion(**kwargs):
        return iter(chunks)
    return completion


def _delta_chunk(**fields):
    base = {"content": None, "reasoning_content": None, "tool_calls": None}
    base.update(fields)
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(**base))], usage=None)


class TestChatCommand:

    def test_streams_reply_and_saves(self, tmp_dir, monkeypatch):
        monkeypatch.setattr(litellm, "completion", _stream(
            _delta_chunk(reasoning_content="pondering", thought_signature="sig"),
            _delta_chunk(content="Hello"),
            _delta_chunk(content=" there"),
        ))
        out = tmp_dir / "saved.yml"
        result = CliRunner().invoke(cli, ["--project-dir", str(tmp_dir), "chat", "hi",
                                          "--hide-reasoning", "--save", str(out)])
        assert result.exit_code == 0, result.output
        assert "Hello there" in result.output

        saved = yaml.safe_load(out.read_text())
        roles = [m["role"] for m in saved["messages"]]
        assert roles == ["user", "assistant"]
        reply = saved["messages"][1]
        assert saved["active"] == reply["id"]
        assert reply["content"] == "Hello there"
        assert reply["reasoning_signature"] == "sig"
        assert reply["reasoning_text"] == "pondering"
        assert reply["source_model_id"] == "openai/model"

    def test_continues_conversation_file(self, tmp_dir, conversation_file, monkeypatch):
        seen = {}

        def completion(**kwargs):
            seen.update(kwargs)
            return iter([_delta_chunk(content="ok")])

        monkeypatch.setattr(litellm, "completion", completion)
        result = CliRunner().invoke(cli, ["--project-dir", str(tmp_dir), "chat", "third",
                                          "--file", str(conversation_file)])
        assert result.exit_code == 0, result.output
        assert [m["role"] for m in seen["messages"]] == [
            "system", "user", "assistant", "user", "user",
        ]
        assert seen["messages"][-1]["content"].endswith("third")

    def test_pinned_prompt_model_used(self, tmp_dir, monkeypatch):
        seen = {}

        def completion(**kwargs):
            seen.update(kwargs)
            return iter([_delta_chunk(content="ok")])

        monkeypatch.setattr(litellm, "completion", completion)
        path = tmp_dir / "pinned.yml"
        path.write_text(yaml.safe_dump({
            "prompts": {"system": {"prompt": "Pinned.", "model": "openai/pinned"}},
            "messages": [],
        }))
        out = tmp_dir / "out.yml"
        result = CliRunner().invoke(cli, ["--project-dir", str(tmp_dir), "chat", "hi",
                                          "--file", str(path), "--save", str(out)])
        assert result.exit_code == 0, result.output
        assert seen["model"] == "openai/pinned"
        saved = yaml.safe_load(out.read_text())
        assert saved["messages"][-1]["source_model_id"] == "openai/pinned"

    def test_preset_custom_system_prompt_sent(self, tmp_dir, monkeypatch):
        seen = {}

        def completion(**kwargs):
            seen.update(kwargs)
            return iter([_delta_chunk(content="ok")])

        monkeypatch.setattr(litellm, "completion", completion)
        (tmp_dir / ".chatturn.yml").write_text(yaml.safe_dump({
            "active-model": "local",
            "models": {"local": {"model": "openai/model", "api-key": "not-needed",
                                 "custom-system-prompt": "Answer tersely."}},
        }))
        result = CliRunner().invoke(cli, ["--project-dir", str(tmp_dir), "chat", "hi"])
        assert result.exit_code == 0, result.output
        assert seen["messages"][0]["role"] == "system"
        assert seen["messages"][0]["content"].startswith("Answer tersely.")
        assert seen["messages"][-1] == {"role": "user", "content": "hi"}

    def test_unknown_model(self, tmp_dir):
        result = CliRunner().invoke(cli, ["--project-dir", str(tmp_dir), "chat", "hi",
                                          "--model", "nope"])
        assert result.exit_code == 2

    def test_provider_failure_exits_nonzero(self, tmp_dir, monkeypatch):
        def fail(**kwargs):
            raise RuntimeError("down")

        monkeypatch.setattr(litellm, "completion", fail)
        result = CliRunner().invoke(cli, ["--project-dir", str(tmp_dir), "chat", "hi"])
        assert result.exit_code == 1
        assert "down" in result.output
