from pathlib import Path

import pytest

from deckhand.config import ModelConfig
from deckhand.context import (
    ContextBudgetManager,
    TRUNCATION_MARKER_RE,
    resolve_context_ceiling,
    truncate_tool_content,
)
from deckhand.conversation import Conversation
from deckhand.exceptions import LLMAPIError
from deckhand.instructions import InstructionLoader
from deckhand.llm import LLMProvider, LLMResponse, Message, ToolCall
from deckhand.process_supervisor import ProcessSupervisor
from deckhand.session import SessionStore


class SummaryProvider(LLMProvider):
    name = "fake"
    model = "fake-model"

    def __init__(self, reply: LLMResponse | Exception | None = None):
        self.reply = reply
        self.calls: list[dict] = []

    async def complete(self, messages, tools=None, system_prompt=None, temperature=None, max_tokens=None):
        self.calls.append({"messages": list(messages), "system_prompt": system_prompt, "max_tokens": max_tokens})
        if self.reply is None:
            raise AssertionError("provider should not be called")
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


def _manager(tmp_path: Path, provider: LLMProvider, store=None, **kwargs) -> ContextBudgetManager:
    return ContextBudgetManager(
        provider,
        store=store,
        supervisor=ProcessSupervisor(cwd=tmp_path),
        instructions=InstructionLoader(personal_dir=tmp_path / "no-overrides"),
        **kwargs,
    )


def _command_round(idx: int, body_chars: int) -> list[Message]:
    return [
        Message(
            role="assistant",
            content="",
            tool_calls=[ToolCall(id=f"c{idx}", name="run_command", arguments={"command": "make"})],
        ),
        Message(
            role="tool",
            content="Exit code: 0\nCommand: make\n\nOutput:\n" + "x" * body_chars,
            tool_call_id=f"c{idx}",
            tool_name="run_command",
        ),
    ]


def _long_conversation(rounds: int = 5, body_chars: int = 7400, max_tokens: int = 10_000) -> Conversation:
    messages = [Message(role="user", content="build it")]
    for idx in range(rounds):
        messages.extend(_command_round(idx, body_chars))
    return Conversation(messages=messages, model="fake-model", max_tokens=max_tokens)


@pytest.mark.asyncio
async def test_truncate_pass_alone_brings_conversation_under_budget(tmp_path: Path):
    manager = _manager(tmp_path, SummaryProvider())
    conversation = _long_conversation()
    before = manager.estimate(conversation)
    assert before > 0.9 * conversation.max_tokens

    fits = await manager.ensure_fits(conversation)

    assert fits is True
    assert manager.estimate(conversation) <= 8_000
    assert len(conversation.messages) == 11
    report = manager.last_report
    assert report.truncated >= 1
    assert report.pruned == 0
    assert report.compaction_attempted is False
    first_tool = conversation.messages[2]
    assert first_tool.content.startswith("Exit code: 0\nCommand: make")
    assert TRUNCATION_MARKER_RE.search(first_tool.content)


@pytest.mark.asyncio
async def test_truncation_is_oldest_first_and_stops_when_it_fits(tmp_path: Path):
    manager = _manager(tmp_path, SummaryProvider())
    conversation = _long_conversation()

    await manager.ensure_fits(conversation)

    tool_messages = [msg for msg in conversation.messages if msg.role == "tool"]
    assert TRUNCATION_MARKER_RE.search(tool_messages[0].content)
    assert not TRUNCATION_MARKER_RE.search(tool_messages[-1].content)


@pytest.mark.asyncio
async def test_ensure_fits_leaves_small_conversation_untouched(tmp_path: Path):
    manager = _manager(tmp_path, SummaryProvider())
    conversation = _long_conversation(rounds=1, body_chars=100)
    snapshot = [msg.content for msg in conversation.messages]

    assert await manager.ensure_fits(conversation) is True
    assert [msg.content for msg in conversation.messages] == snapshot


def test_truncated_result_is_not_truncated_again(tmp_path: Path):
    manager = _manager(tmp_path, SummaryProvider(), truncate_threshold_chars=10)
    conversation = _long_conversation(max_tokens=100)

    manager.truncate_tool_results(conversation)
    first_pass = [msg.content for msg in conversation.messages]
    manager.truncate_tool_results(conversation)

    assert [msg.content for msg in conversation.messages] == first_pass


def test_truncate_tool_content_keeps_header_lines():
    content = "File: /tmp/a.py\nSize: 9000 bytes\nLines: 300\n\n" + "print('x')\n" * 800

    shortened = truncate_tool_content(content, keep_chars=50)

    lines = shortened.splitlines()
    assert lines[:3] == ["File: /tmp/a.py", "Size: 9000 bytes", "Lines: 300"]
    assert lines[-1].startswith("... [truncated ")
    assert len(shortened) < 200


def test_prune_removes_old_tool_results_but_keeps_tail(tmp_path: Path):
    manager = _manager(tmp_path, SummaryProvider(), prune_keep_tail=2)
    conversation = _long_conversation(rounds=4, body_chars=2000, max_tokens=1200)
    tail = [msg.content for msg in conversation.messages[-2:]]

    removed = manager.prune_tool_results(conversation)

    assert removed >= 1
    assert [msg.content for msg in conversation.messages[-2:]] == tail
    assert conversation.messages[0].role == "user"


@pytest.mark.asyncio
async def test_compact_replaces_history_with_notice_and_summary(tmp_path: Path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    provider = SummaryProvider(LLMResponse.text("## Task\nBuild the site."))
    manager = _manager(tmp_path, provider, store=store)
    conversation = _long_conversation(rounds=2, body_chars=100)
    original = [msg.to_dict() for msg in conversation.messages]
    try:
        assert await manager.compact(conversation) is True

        assert [msg.role for msg in conversation.messages] == ["user", "assistant"]
        assert conversation.messages[0].content.startswith("[Context compacted]")
        assert conversation.messages[1].content == "## Task\nBuild the site."
        backup = await store.restore_backup()
        assert backup is not None
        assert [msg.to_dict() for msg in backup.history] == original
        prompt = provider.calls[0]["messages"][0].content
        assert "Working directory:" in prompt
        assert "build it" in prompt
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_failed_compaction_restores_backup(tmp_path: Path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    manager = _manager(tmp_path, SummaryProvider(LLMAPIError("server error", status_code=500)), store=store)
    conversation = _long_conversation(rounds=2, body_chars=100)
    original = [msg.content for msg in conversation.messages]
    try:
        assert await manager.compact(conversation) is False
        assert [msg.content for msg in conversation.messages] == original
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_failed_compaction_without_backup_keeps_recent_third(tmp_path: Path):
    manager = _manager(tmp_path, SummaryProvider(LLMResponse.text("   ")))
    conversation = Conversation(
        messages=[
            Message(role="user", content="one"),
            Message(role="assistant", content="two"),
            Message(role="user", content="three"),
            Message(role="assistant", content="four"),
            Message(role="user", content="five"),
            Message(role="assistant", content="six"),
        ],
        max_tokens=1000,
    )

    assert await manager.compact(conversation) is False
    assert [msg.content for msg in conversation.messages] == ["five", "six"]


def test_context_usage_reports_percentage(tmp_path: Path):
    manager = _manager(tmp_path, SummaryProvider())
    conversation = Conversation(messages=[Message(role="user", content="x" * 400)], max_tokens=1000)

    usage = manager.context_usage(conversation, reserved_tokens=96)

    assert usage == {"used_tokens": 200, "max_tokens": 1000, "percentage": 20}


def test_ceiling_is_capped_by_tokens_per_minute_limit():
    assert resolve_context_ceiling("llama-3.3-70b-versatile", tpm_limit=6000) == 6000


def test_ceiling_prefers_configured_context_window():
    cfg = ModelConfig(model="my-model", context_window=16384)
    assert resolve_context_ceiling("my-model", cfg) == 16384


def test_ceiling_uses_allowed_entry_settings():
    cfg = ModelConfig.model_validate({
        "model": "base",
        "allowed": [
            {"id": "fast", "provider": "groq", "model": "tiny", "context_window": 8192, "tpm_limit": 5000},
        ],
    })
    assert resolve_context_ceiling("tiny", cfg) == 5000


def test_ceiling_falls_back_to_default_for_unknown_model():
    assert resolve_context_ceiling("mystery-model", default=12345) == 12345
