import io
from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

from deckhand import __version__
from deckhand.cli import TerminalUI
from deckhand.config import Config
from deckhand.main import app, build_agent


def test_version_command():
    result = CliRunner().invoke(app, ["version"])

    assert result.exit_code == 0
    assert f"Deckhand v{__version__}" in result.output


@pytest.mark.asyncio
async def test_build_agent_wires_configured_collaborators(tmp_path: Path):
    cfg = Config.model_validate({
        "model": {"provider": "ollama", "model": "llama3.2", "context_window": 8192},
        "agent": {"max_depth": 5},
        "tools": {"dangerous": ["run_command"]},
    })
    ui = TerminalUI(console=Console(file=io.StringIO()))

    agent = await build_agent(cfg, ui, cwd=tmp_path)
    try:
        assert agent.provider.name == "ollama"
        assert agent.conversation.max_tokens == 8192
        assert agent.max_depth == 5
        assert agent.supervisor.cwd == tmp_path.resolve()
        assert agent.permissions.dangerous_tools == {"run_command"}
        assert agent.permissions.on_request is not None
        assert len(agent.tools.list_tools()) == 9
    finally:
        await agent.provider.close()
        await agent.tools.get("fetch_url").close()
