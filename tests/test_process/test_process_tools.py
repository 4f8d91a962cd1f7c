from pathlib import Path

import pytest

from deckhand.config import Config
from deckhand.exceptions import ToolBlockedError
from deckhand.process_supervisor import CommandResult, ProcessSupervisor
from deckhand.tools import build_registry
from deckhand.tools.process import format_command_result


def _config() -> Config:
    cfg = Config()
    cfg.process.foreground_timeout = 0.5
    cfg.process.stop_grace_seconds = 1.0
    cfg.process.send_input_wait = 0.3
    return cfg


@pytest.mark.asyncio
async def test_dev_server_command_is_backgrounded_with_port(tmp_path: Path):
    supervisor = ProcessSupervisor.from_config(_config(), cwd=tmp_path)
    registry = build_registry(supervisor, _config())
    try:
        result = await registry.execute(
            "run_command",
            {"command": "echo 'dev server ready on localhost:5173' && sleep 30"},
            cwd=supervisor.cwd,
        )

        assert result.success is True
        assert "Process ID: bg_1" in result.content
        assert "Port: 5173" in result.content
        assert "Output preview:" in result.content

        listing = await registry.execute("list_processes", {})
        assert "Processes: 1" in listing.content
        assert "bg_1" in listing.content

        logs = await registry.execute("get_logs", {"process_id": "bg_1", "tail": 5})
        assert "Status: running" in logs.content
        assert "dev server ready" in logs.content

        stopped = await registry.execute("stop_process", {"process_id": "bg_1"})
        assert "Status: stopped" in stopped.content
    finally:
        await supervisor.shutdown()
        await registry.get("fetch_url").close()


@pytest.mark.asyncio
async def test_unknown_process_id_reports_known_ids(tmp_path: Path):
    supervisor = ProcessSupervisor.from_config(_config(), cwd=tmp_path)
    registry = build_registry(supervisor, _config())
    try:
        await registry.execute("run_command", {"command": "sleep 30"})

        result = await registry.execute("stop_process", {"process_id": "bg_7"})

        assert result.success is False
        assert "bg_7" in result.error
        assert "Known ids: bg_1" in result.error
    finally:
        await supervisor.shutdown()
        await registry.get("fetch_url").close()


@pytest.mark.asyncio
async def test_send_input_tool_round_trip(tmp_path: Path):
    supervisor = ProcessSupervisor.from_config(_config(), cwd=tmp_path)
    registry = build_registry(supervisor, _config())
    try:
        await registry.execute("run_command", {"command": "read answer; echo \"got $answer\"; sleep 30"})

        result = await registry.execute("send_input", {"process_id": "bg_1", "input": "yes"})

        assert result.success is True
        assert "got yes" in result.content
    finally:
        await supervisor.shutdown()
        await registry.get("fetch_url").close()


@pytest.mark.asyncio
async def test_blocked_command_never_runs(tmp_path: Path):
    supervisor = ProcessSupervisor.from_config(_config(), cwd=tmp_path)
    registry = build_registry(supervisor, _config())
    try:
        with pytest.raises(ToolBlockedError):
            await registry.execute("run_command", {"command": "rm -rf /"})
        assert supervisor.list() == []
    finally:
        await registry.get("fetch_url").close()


def test_completed_result_formats_exit_code_header():
    result = format_command_result(
        CommandResult(status="completed", command="make", cwd="/src", exit_code=2, output="boom\n")
    )

    assert result.success is False
    assert result.content.startswith("Exit code: 2\nCommand: make\nCwd: /src")
    assert result.content.endswith("Output:\nboom")


def test_failed_result_carries_error():
    result = format_command_result(
        CommandResult(status="failed", command="cd nope", cwd="/src", exit_code=1, error="No such directory: /src/nope")
    )

    assert result.success is False
    assert result.to_text().startswith("Error: No such directory")
