from pathlib import Path

from deckhand.conversation import Conversation
from deckhand.instructions import COMPACTION_NOTICE, SYSTEM_PROMPT, InstructionLoader
from deckhand.llm import Message, ToolCall


def test_system_prompt_renders_working_directory(tmp_path: Path):
    loader = InstructionLoader(personal_dir=tmp_path / "none")

    prompt = loader.system_prompt(tmp_path / "project")

    assert f"Working directory: {tmp_path / 'project'}" in prompt
    assert "{cwd}" not in prompt


def test_personal_override_takes_precedence(tmp_path: Path):
    personal = tmp_path / "personal"
    personal.mkdir()
    (personal / SYSTEM_PROMPT).write_text("Custom prompt for {cwd} {unknown}", encoding="utf-8")
    loader = InstructionLoader(personal_dir=personal)

    assert loader.is_overridden(SYSTEM_PROMPT) is True
    assert loader.is_overridden(COMPACTION_NOTICE) is False
    assert loader.system_prompt("/work") == "Custom prompt for /work {unknown}"


def test_conversation_detects_orphan_tool_results():
    conversation = Conversation(messages=[
        Message(role="user", content="go"),
        Message(role="assistant", content="", tool_calls=[ToolCall(id="c1", name="list_dir", arguments={})]),
        Message(role="tool", content="ok", tool_call_id="c1"),
    ])
    assert conversation.has_valid_tool_references() is True
    assert conversation.tool_call_ids() == {"c1"}

    conversation.append(Message(role="tool", content="stray", tool_call_id="c9"))
    assert conversation.has_valid_tool_references() is False


def test_replace_swaps_history_in_place():
    conversation = Conversation(messages=[Message(role="user", content="old")])
    alias = conversation.messages

    conversation.replace([Message(role="user", content="new")])

    assert alias[0].content == "new"
    assert len(conversation) == 1
