from nai_chat.domain.models import Message, THINK_GLM46, THINK_GLM47, THINK_NONE, ThinkModePolicy
from nai_chat.providers.prompt_format import format_prompt
from nai_chat.providers.registry import PromptTemplate


NOTHINK = ThinkModePolicy(name="custom", user_suffix="/nothink", assistant_prefix="</think>\n")


def test_format_prompt_layout():
    msgs = [
        Message(role="user", content="Hi"),
        Message(role="assistant", content="Hello"),
        Message(role="user", content="Bye"),
    ]
    prompt = format_prompt("sys", msgs, THINK_GLM46, thinking=False)
    assert prompt == (
        "[gMASK]<sop>"
        "<|system|>\nsys\n"
        "<|user|>\nHi\n"
        "<|assistant|>\nHello\n"
        "<|user|>\nBye/nothink\n"
        "<|assistant|>\n<think></think>\n"
    )


def test_nothink_markers_appear_once_when_thinking_disabled():
    prompt = format_prompt("sys", [Message(role="user", content="Hello")], NOTHINK, thinking=False)
    assert prompt.count("/nothink") == 1
    assert prompt.count("</think>") == 1
    assert "Hello/nothink\n" in prompt
    assert prompt.endswith("<|assistant|>\n</think>\n")


def test_thinking_enabled_emits_no_markers():
    for policy in (NOTHINK, THINK_GLM46, THINK_GLM47):
        prompt = format_prompt("sys", [Message(role="user", content="Hello")], policy, thinking=True)
        assert "/nothink" not in prompt
        assert "</think>" not in prompt
        assert prompt.endswith("<|assistant|>\n")


def test_no_system_block_without_system_prompt():
    prompt = format_prompt("", [Message(role="user", content="Hello")], THINK_NONE, thinking=False)
    assert prompt == "[gMASK]<sop><|user|>\nHello\n<|assistant|>\n"


def test_suffix_not_reapplied_on_continuation():
    msgs = [
        Message(role="user", content="Write a story"),
        Message(role="assistant", content="Once upon"),
    ]
    prompt = format_prompt("sys", msgs, THINK_GLM47, thinking=False)
    assert "/nothink" not in prompt
    assert "<|user|>\nWrite a story\n" in prompt
    assert prompt.endswith("<|assistant|>\nOnce upon\n<|assistant|>\n</think>")


def test_mid_history_system_turns_are_each_delimited():
    msgs = [
        Message(role="user", content="a"),
        Message(role="system", content="note 1"),
        Message(role="system", content="note 2"),
        Message(role="user", content="b"),
    ]
    prompt = format_prompt("sys", msgs, THINK_NONE, thinking=False)
    assert prompt.count("<|system|>") == 3
    assert "<|system|>\nnote 1\n<|system|>\nnote 2\n" in prompt


def test_custom_template_is_used():
    template = PromptTemplate(name="t", prefix="<s>", system="[S]", user="[U]", assistant="[A]")
    prompt = format_prompt("sys", [Message(role="user", content="x")], THINK_NONE, thinking=True, template=template)
    assert prompt == "<s>[S]\nsys\n[U]\nx\n[A]\n"


def test_format_prompt_is_deterministic_and_does_not_mutate_history():
    msgs = [Message(role="user", content="Hello")]
    first = format_prompt("sys", msgs, THINK_GLM46, thinking=False)
    second = format_prompt("sys", msgs, THINK_GLM46, thinking=False)
    assert first == second
    assert msgs[0].content == "Hello"


def test_glm47_prefix_is_last_text_in_prompt():
    prompt = format_prompt("sys", [Message(role="user", content="Hello")], THINK_GLM47, thinking=False)
    assert prompt.endswith("<|assistant|>\n</think>")
    assert prompt.count("</think>") == 1
