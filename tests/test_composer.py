"""Tests for request message composition."""

import copy

from chatturn.composer import (
    SCREENSHOT_NOTICE,
    USER_MESSAGE_SEPARATOR,
    ComposedMessage,
    ComposeRequest,
    PageContext,
    apply_user_message_spacing,
    build_system_message,
    compose_messages,
    node_to_message,
)
from chatturn.history import GeminiSignature, OpenAISignature
from chatturn.prompts import PromptTemplate


def _contents(messages):
    return [m.content for m in messages]


def _roles(messages):
    return [m.role for m in messages]


class TestBuildSystemMessage:

    def test_all_parts_in_order(self):
        page = PageContext(title="Docs", url="https://example.com", content="Body")
        content = build_system_message(
            {"system": PromptTemplate("You are helpful.")},
            ["rule one", "rule two"],
            page,
            image_contains_screenshot=True,
        )
        assert content == (
            "You are helpful."
            + SCREENSHOT_NOTICE
            + "\nrule one\nrule two"
            + "\n\nCurrent page content:\nTitle: Docs\nURL: https://example.com\nContent: Body"
        )

    def test_template_shapes(self):
        assert build_system_message({"system": "plain"}) == "plain"
        assert build_system_message({"system": {"prompt": "mapped", "model": "x"}}) == "mapped"
        assert build_system_message({}) == ""
        assert build_system_message(None) == ""

    def test_empty_page_context_skipped(self):
        assert build_system_message({"system": "s"}, page_context=PageContext()) == "s"

    def test_non_string_injections_ignored(self):
        assert build_system_message({}, ["ok", 3, None]) == "\nok"


class TestComposeMessages:

    def test_system_first_then_history(self, alternating_chain):
        request = ComposeRequest(prompts={"system": PromptTemplate("sys")},
                                 conversation_chain=alternating_chain)
        messages = compose_messages(request)
        assert messages[0] == ComposedMessage("system", "sys")
        assert len(messages) == 1 + len(alternating_chain)
        assert messages[-1].content == "question 4"

    def test_blank_system_omitted(self, alternating_chain):
        request = ComposeRequest(prompts={"system": "   "}, conversation_chain=alternating_chain)
        assert compose_messages(request)[0].role == "user"

    def test_role_ceilings(self, alternating_chain):
        request = ComposeRequest(conversation_chain=alternating_chain,
                                 max_user_history=2, max_assistant_history=1)
        assert _contents(compose_messages(request)) == ["question 3", "answer 3", "question 4"]

    def test_role_ceiling_wins_over_legacy(self, alternating_chain):
        request = ComposeRequest(conversation_chain=alternating_chain, max_history=6,
                                 max_user_history=1, max_assistant_history=0)
        assert _contents(compose_messages(request)) == ["question 4"]

    def test_single_role_ceiling_leaves_other_unbounded(self, alternating_chain):
        request = ComposeRequest(conversation_chain=alternating_chain, max_assistant_history=1)
        assert _roles(compose_messages(request)) == ["user", "user", "user", "assistant", "user"]

    def test_legacy_positive_ceiling(self, alternating_chain):
        request = ComposeRequest(conversation_chain=alternating_chain, max_history=3)
        assert _contents(compose_messages(request)) == ["question 3", "answer 3", "question 4"]

    def test_legacy_negative_or_missing_keeps_all(self, alternating_chain):
        for ceiling in (None, -1):
            request = ComposeRequest(conversation_chain=alternating_chain, max_history=ceiling)
            assert len(compose_messages(request)) == len(alternating_chain)

    def test_legacy_zero_still_sends_latest_user(self, alternating_chain):
        request = ComposeRequest(prompts={"system": "sys"}, conversation_chain=alternating_chain,
                                 max_history=0)
        messages = compose_messages(request)
        assert _roles(messages) == ["system", "user"]
        assert messages[-1].content == "question 4"

    def test_send_history_off_sends_latest_node_only(self, node_factory):
        chain = [
            node_factory("u1", "user", "old"),
            node_factory("a1", "assistant", "reply", signature="s", source="openai",
                         reasoning_text="why"),
            node_factory("u2", "user", "<think>draft</think>new question"),
        ]
        messages = compose_messages(ComposeRequest(conversation_chain=chain, send_history=False))
        assert messages == [ComposedMessage("user", "new question")]

    def test_send_history_off_with_zero_legacy_does_not_duplicate(self, alternating_chain):
        request = ComposeRequest(conversation_chain=alternating_chain, send_history=False,
                                 max_history=0)
        assert _contents(compose_messages(request)) == ["question 4"]

    def test_empty_chain(self):
        assert compose_messages(ComposeRequest()) == []

    def test_regenerate_truncates_at_target(self, alternating_chain):
        request = ComposeRequest(conversation_chain=alternating_chain,
                                 regenerate_mode=True, target_message_id="u2")
        assert _contents(compose_messages(request)) == [
            "question 1", "answer 1", "question 2",
        ]

    def test_regenerate_unknown_target_uses_whole_chain(self, alternating_chain):
        request = ComposeRequest(conversation_chain=alternating_chain,
                                 regenerate_mode=True, target_message_id="missing")
        assert len(compose_messages(request)) == len(alternating_chain)

    def test_regenerate_flag_needs_target(self, alternating_chain):
        request = ComposeRequest(conversation_chain=alternating_chain, regenerate_mode=True)
        assert len(compose_messages(request)) == len(alternating_chain)

    def test_consecutive_users_are_separated(self, node_factory):
        chain = [node_factory("u1", "user", "first"), node_factory("u2", "user", "second")]
        messages = compose_messages(ComposeRequest(conversation_chain=chain))
        assert _contents(messages) == ["first", USER_MESSAGE_SEPARATOR + "second"]

    def test_dict_nodes(self):
        chain = [
            {"id": "u1", "role": "user", "content": "hi"},
            {"id": "a1", "role": "model", "content": "<think>t</think>hello",
             "reasoning_signature": "g", "signature_source": "gemini"},
            {"id": "u2", "role": "user", "content": "bye"},
        ]
        messages = compose_messages(ComposeRequest(conversation_chain=chain))
        assert _roles(messages) == ["user", "assistant", "user"]
        assert messages[1].content == "hello"
        assert messages[1].reasoning == GeminiSignature("g")

    def test_same_inputs_compose_identically(self, node_factory):
        chain = [
            node_factory("u1", "user", "first"),
            node_factory("u2", "user", "second"),
            node_factory("a1", "assistant", "<think>plan</think>done", signature="sig",
                         source="openai", reasoning_text="plan", model="gpt-4o"),
            node_factory("u3", "user", "third"),
            node_factory("u4", "user", "fourth"),
        ]
        snapshot = copy.deepcopy(chain)
        request = ComposeRequest(
            prompts={"system": PromptTemplate("sys")},
            page_context=PageContext(title="Docs", url="https://example.com", content="Body"),
            conversation_chain=chain,
            max_user_history=3,
            max_assistant_history=1,
        )
        first = compose_messages(request)
        second = compose_messages(request)
        assert first == second
        assert chain == snapshot
        assert _contents(first[1:]) == [
            "second",
            "done",
            "third",
            USER_MESSAGE_SEPARATOR + "fourth",
        ]
        assert first[2].reasoning == OpenAISignature("sig", "plan")


class TestNodeToMessage:

    def test_assistant_keeps_openai_reasoning(self, node_factory):
        node = node_factory("a1", "assistant", "answer", signature="sig", source="openai",
                            reasoning_text="  keep spacing  ", tool_invocations=[{"id": "c1"}],
                            model="gpt-x")
        message = node_to_message(node)
        assert message.reasoning == OpenAISignature("sig", "  keep spacing  ", ({"id": "c1"},))
        assert message.reasoning_text == "  keep spacing  "
        assert message.source_model_id == "gpt-x"
        assert message.to_dict()["tool_invocations"] == [{"id": "c1"}]

    def test_user_drops_openai_reasoning(self, node_factory):
        node = node_factory("u1", "user", "q", signature="sig", source="openai",
                            reasoning_text="stray")
        message = node_to_message(node)
        assert message.reasoning is None
        assert message.reasoning_signature is None
        assert message.reasoning_text is None

    def test_thoughts_stripped(self, node_factory):
        node = node_factory("a1", "assistant", "<think>plan</think>\nAnswer")
        assert node_to_message(node).content == "Answer"

    def test_blank_model_id_dropped(self, node_factory):
        assert node_to_message(node_factory("a1", "assistant", "x", model="  ")).source_model_id is None

    def test_structured_content_untouched(self, node_factory):
        parts = [{"type": "text", "text": "<think>x</think>hi"}]
        assert node_to_message(node_factory("u1", "user", parts)).content is parts


class TestUserMessageSpacing:

    def test_only_second_of_pair_prefixed(self):
        messages = [
            ComposedMessage("system", "s"),
            ComposedMessage("user", "a"),
            ComposedMessage("user", "b"),
            ComposedMessage("user", "c"),
            ComposedMessage("assistant", "d"),
            ComposedMessage("user", "e"),
        ]
        assert _contents(apply_user_message_spacing(messages)) == [
            "s", "a", USER_MESSAGE_SEPARATOR + "b", USER_MESSAGE_SEPARATOR + "c", "d", "e",
        ]

    def test_idempotent(self):
        messages = [ComposedMessage("user", "a"), ComposedMessage("user", "b")]
        once = apply_user_message_spacing(messages)
        assert apply_user_message_spacing(once) == once

    def test_input_not_mutated(self):
        messages = [ComposedMessage("user", "a"), ComposedMessage("user", "b")]
        apply_user_message_spacing(messages)
        assert messages[1].content == "b"

    def test_non_string_content_skipped(self):
        parts = [{"type": "image_url", "image_url": {"url": "data:"}}]
        messages = [ComposedMessage("user", "a"), ComposedMessage("user", parts)]
        assert apply_user_message_spacing(messages)[1].content is parts
