import asyncio

import pytest

from deckhand.config import Config
from deckhand.exceptions import ToolBlockedError, ToolExecutionError, ToolNotFoundError
from deckhand.process_supervisor import ProcessSupervisor
from deckhand.tools import build_registry
from deckhand.tools.registry import (
    Tool,
    ToolRegistry,
    ToolResult,
    extract_shell_base_commands,
    is_blocked_shell_command,
)

DEFAULT_BLOCKED = Config().tools.blocked_commands


class DummyShellTool(Tool):
    name = "run_command"
    description = "Dummy shell"
    parameters = {
        "type": "object",
        "properties": {"command": {"type": "string"}},
        "required": ["command"],
    }

    def __init__(self):
        self.commands: list[str] = []
        self.cwds: list[str | None] = []

    async def execute(self, command: str, **kwargs):
        self.commands.append(command)
        self.cwds.append(kwargs.get("_cwd"))
        return ToolResult(success=True, content="ok")


class DummyEchoTool(DummyShellTool):
    name = "echo"


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    parameters = {
        "type": "object",
        "properties": {},
        "required": [],
    }
    timeout_seconds = 1.0

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolResult(success=True, content="done")


class BrokenTool(Tool):
    name = "broken"
    description = "Raises"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        raise RuntimeError("kaboom")


@pytest.mark.asyncio
async def test_shell_blocking_uses_parsed_base_command_not_substring_matches():
    registry = ToolRegistry(blocked_commands=["rm"])
    shell = DummyShellTool()
    registry.register(shell)

    allowed = await registry.execute("run_command", {"command": "grep format README.md"})
    assert allowed.success is True

    with pytest.raises(ToolBlockedError, match="Command matches blocked pattern: rm"):
        await registry.execute("run_command", {"command": "echo ok && rm -rf /tmp/demo"})
    assert shell.commands == ["grep format README.md"]


@pytest.mark.parametrize(
    "command",
    ["rm -rf /", "sudo rm -rf /", "rm -rf /*", "mkfs.ext4 /dev/sda1", "dd if=/dev/zero of=/dev/sda"],
)
def test_default_patterns_block_destructive_commands(command: str):
    blocked, _ = is_blocked_shell_command(command, DEFAULT_BLOCKED)
    assert blocked is True


@pytest.mark.parametrize(
    "command",
    ["rm -rf /tmp/build", "rm -rf ./dist", "dd if=a.img of=b.img", "npm run dev", "ls -la"],
)
def test_default_patterns_allow_ordinary_commands(command: str):
    blocked, _ = is_blocked_shell_command(command, DEFAULT_BLOCKED)
    assert blocked is False


def test_extract_shell_base_commands_skips_wrappers_and_assignments():
    assert extract_shell_base_commands("FOO=1 sudo make test | tee out.log") == ["make", "tee"]


@pytest.mark.asyncio
async def test_empty_command_is_blocked():
    registry = ToolRegistry()
    registry.register(DummyShellTool())

    with pytest.raises(ToolBlockedError, match="empty"):
        await registry.execute("run_command", {"command": "   "})


@pytest.mark.asyncio
async def test_registry_uses_tool_level_timeout_seconds():
    registry = ToolRegistry()
    registry.register(SlowTool())

    with pytest.raises(ToolExecutionError, match="timed out"):
        await registry.execute("slow", {})


@pytest.mark.asyncio
async def test_registry_wraps_unexpected_exceptions():
    registry = ToolRegistry()
    registry.register(BrokenTool())

    with pytest.raises(ToolExecutionError, match="kaboom"):
        await registry.execute("broken", {})


@pytest.mark.asyncio
async def test_missing_required_argument_and_unknown_tool():
    registry = ToolRegistry()
    registry.register(DummyEchoTool())

    with pytest.raises(ToolExecutionError, match="Missing required argument: command"):
        await registry.execute("echo", {})
    with pytest.raises(ToolNotFoundError):
        await registry.execute("nope", {})


@pytest.mark.asyncio
async def test_registry_passes_working_directory(tmp_path):
    registry = ToolRegistry()
    shell = DummyShellTool()
    registry.register(shell)

    await registry.execute("run_command", {"command": "ls"}, cwd=tmp_path)

    assert shell.cwds == [str(tmp_path)]


def test_tool_result_text_for_success_and_failure():
    assert ToolResult(success=True, content="").to_text() == "[no output]"
    assert ToolResult(success=False, error="nope").to_text() == "Error: nope"
    assert ToolResult(success=False, content="details").to_text() == "Error: details\ndetails"


@pytest.mark.asyncio
async def test_build_registry_exposes_full_catalogue(tmp_path):
    registry = build_registry(ProcessSupervisor(cwd=tmp_path), Config())
    try:
        assert set(registry.list_tools()) == {
            "read_file",
            "write_file",
            "list_dir",
            "run_command",
            "stop_process",
            "list_processes",
            "get_logs",
            "send_input",
            "fetch_url",
        }
        for definition in registry.get_definitions():
            assert definition["parameters"]["type"] == "object"
    finally:
        await registry.get("fetch_url").close()
