from pathlib import Path

import pytest

from deckhand.agent import Agent
from deckhand.commands import HELP_TEXT, CommandDispatcher
from deckhand.config import Config
from deckhand.context import ContextBudgetManager
from deckhand.instructions import InstructionLoader
from deckhand.llm import LLMProvider, LLMResponse, Message
from deckhand.permissions import PermissionGate
from deckhand.process_supervisor import ProcessSupervisor
from deckhand.session import SessionStore
from deckhand.tools import ToolRegistry


class DummyProvider(LLMProvider):
    def __init__(self, name: str = "groq", model: str = "qwen-2.5-coder-32b"):
        self.name = name
        self.model = model
        self.closed = False

    async def complete(self, messages, tools=None, system_prompt=None, temperature=None, max_tokens=None):
        return LLMResponse.text("ok")

    async def close(self) -> None:
        self.closed = True


def _provider_factory(**kwargs) -> LLMProvider:
    return DummyProvider(name=kwargs["provider"], model=kwargs["model"])


def _agent(tmp_path: Path, provider: LLMProvider) -> Agent:
    supervisor = ProcessSupervisor(cwd=tmp_path)
    return Agent(
        provider=provider,
        tools=ToolRegistry(),
        budget=ContextBudgetManager(provider, supervisor=supervisor),
        permissions=PermissionGate(),
        supervisor=supervisor,
        instructions=InstructionLoader(personal_dir=tmp_path / "no-overrides"),
    )


def _config() -> Config:
    return Config.model_validate({
        "model": {
            "provider": "groq",
            "model": "qwen-2.5-coder-32b",
            "allowed": [
                {"id": "local", "provider": "ollama", "model": "llama3.2", "context_window": 8192},
            ],
        },
    })


@pytest.mark.asyncio
async def test_plain_text_is_not_a_command(tmp_path: Path):
    dispatcher = CommandDispatcher(_agent(tmp_path, DummyProvider()), _config())
    assert await dispatcher.handle("fix the bug") is None


@pytest.mark.asyncio
async def test_help_and_unknown_commands(tmp_path: Path):
    dispatcher = CommandDispatcher(_agent(tmp_path, DummyProvider()), _config())

    help_outcome = await dispatcher.handle("/help")
    unknown = await dispatcher.handle("/frobnicate")

    assert help_outcome.message == HELP_TEXT
    assert unknown.level == "error"
    assert "/frobnicate" in unknown.message


@pytest.mark.asyncio
async def test_exit_and_quit_request_exit(tmp_path: Path):
    dispatcher = CommandDispatcher(_agent(tmp_path, DummyProvider()), _config())

    assert (await dispatcher.handle("/exit")).exit is True
    assert (await dispatcher.handle("/quit")).exit is True


@pytest.mark.asyncio
async def test_clear_resets_conversation_and_store(tmp_path: Path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    agent = _agent(tmp_path, DummyProvider())
    agent.conversation.append(Message(role="user", content="hello"))
    agent.transcript.append(Message(role="user", content="hello"))
    await store.save(agent.conversation.messages, agent.transcript, "m", tmp_path)
    dispatcher = CommandDispatcher(agent, _config(), store)
    try:
        outcome = await dispatcher.handle("/clear")

        assert outcome.level == "success"
        assert agent.conversation.messages == []
        assert agent.transcript == []
        assert await store.load() is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_restore_without_backup_reports_error(tmp_path: Path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    dispatcher = CommandDispatcher(_agent(tmp_path, DummyProvider()), _config(), store)
    try:
        outcome = await dispatcher.handle("/restore")
        assert outcome.level == "error"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_restore_loads_backup_into_conversation(tmp_path: Path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    agent = _agent(tmp_path, DummyProvider())
    await store.backup(
        [Message(role="user", content="old task"), Message(role="assistant", content="old answer")],
        model="m",
        cwd=str(tmp_path),
    )
    dispatcher = CommandDispatcher(agent, _config(), store)
    try:
        outcome = await dispatcher.handle("/restore")

        assert outcome.level == "success"
        assert [msg.content for msg in agent.conversation.messages] == ["old task", "old answer"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_model_switch_uses_allowed_entry_and_closes_old_provider(tmp_path: Path):
    old_provider = DummyProvider()
    agent = _agent(tmp_path, old_provider)
    agent.conversation.append(Message(role="user", content="keep me"))
    dispatcher = CommandDispatcher(agent, _config(), provider_factory=_provider_factory)

    outcome = await dispatcher.handle("/model local")

    assert outcome.level == "success"
    assert agent.provider.name == "ollama"
    assert agent.provider.model == "llama3.2"
    assert agent.conversation.max_tokens == 8192
    assert agent.conversation.messages[0].content == "keep me"
    assert old_provider.closed is True


@pytest.mark.asyncio
async def test_model_without_argument_lists_current_and_allowed(tmp_path: Path):
    dispatcher = CommandDispatcher(_agent(tmp_path, DummyProvider()), _config())

    outcome = await dispatcher.handle("/model")

    assert "groq/qwen-2.5-coder-32b" in outcome.message
    assert "local: ollama/llama3.2" in outcome.message


@pytest.mark.asyncio
async def test_provider_switch_rejects_unknown_backend(tmp_path: Path):
    agent = _agent(tmp_path, DummyProvider())
    dispatcher = CommandDispatcher(agent, _config(), provider_factory=_provider_factory)

    rejected = await dispatcher.handle("/provider nope")
    accepted = await dispatcher.handle("/provider openrouter")

    assert rejected.level == "error"
    assert accepted.level == "success"
    assert agent.provider.name == "openrouter"
    assert agent.provider.model == "qwen-2.5-coder-32b"


@pytest.mark.asyncio
async def test_processes_command_lists_background_processes(tmp_path: Path):
    dispatcher = CommandDispatcher(_agent(tmp_path, DummyProvider()), _config())

    outcome = await dispatcher.handle("/processes")

    assert outcome.message == "No background processes."
