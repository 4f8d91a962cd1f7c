import asyncio
from pathlib import Path

import pytest

from deckhand.process_supervisor import ProcessSupervisor, detect_port


def _supervisor(tmp_path: Path, **kwargs) -> ProcessSupervisor:
    options = {
        "foreground_timeout": 0.5,
        "stop_grace_seconds": 1.0,
        "send_input_wait": 0.3,
    }
    options.update(kwargs)
    return ProcessSupervisor(cwd=tmp_path, **options)


@pytest.mark.asyncio
async def test_quick_command_completes_in_foreground(tmp_path: Path):
    supervisor = _supervisor(tmp_path)
    try:
        result = await supervisor.run("echo hello && echo oops >&2")

        assert result.status == "completed"
        assert result.exit_code == 0
        assert "hello" in result.output
        assert "oops" in result.output
        assert supervisor.list() == []
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_nonzero_exit_code_is_reported(tmp_path: Path):
    supervisor = _supervisor(tmp_path)
    try:
        result = await supervisor.run("exit 3")
        assert result.status == "completed"
        assert result.exit_code == 3
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_commands_run_in_tracked_directory(tmp_path: Path):
    (tmp_path / "marker.txt").write_text("", encoding="utf-8")
    supervisor = _supervisor(tmp_path)
    try:
        result = await supervisor.run("ls")
        assert "marker.txt" in result.output
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_long_runner_is_backgrounded_with_sequential_ids(tmp_path: Path):
    supervisor = _supervisor(tmp_path)
    try:
        first = await supervisor.run("sleep 30")
        second = await supervisor.run("sleep 30")

        assert first.status == "backgrounded"
        assert first.process_id == "bg_1"
        assert second.process_id == "bg_2"
        infos = supervisor.list()
        assert [info.id for info in infos] == ["bg_1", "bg_2"]
        assert all(info.status == "running" for info in infos)
        assert all(info.pid for info in infos)
    finally:
        await supervisor.shutdown()
    assert supervisor.list() == []


@pytest.mark.asyncio
async def test_dev_server_port_is_detected_from_output(tmp_path: Path):
    supervisor = _supervisor(tmp_path)
    try:
        result = await supervisor.run("echo 'Local: http://localhost:5173/' && sleep 30")

        assert result.status == "backgrounded"
        assert result.process_id.startswith("bg_")
        assert result.port == 5173
        assert "localhost:5173" in result.preview
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_stop_terminates_and_returns_output(tmp_path: Path):
    supervisor = _supervisor(tmp_path)
    try:
        started = await supervisor.run("echo started && sleep 30")
        stopped = await supervisor.stop(started.process_id)

        assert stopped.found is True
        assert stopped.was_running is True
        assert "started" in stopped.output
        assert supervisor.get(started.process_id) is None
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_stop_escalates_when_sigterm_is_ignored(tmp_path: Path):
    supervisor = _supervisor(tmp_path, stop_grace_seconds=0.5)
    try:
        started = await supervisor.run("trap '' TERM; sleep 30")
        stopped = await asyncio.wait_for(supervisor.stop(started.process_id), timeout=10)

        assert stopped.found is True
        assert supervisor.list() == []
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_stop_unknown_id_lists_known_ids(tmp_path: Path):
    supervisor = _supervisor(tmp_path)
    try:
        await supervisor.run("sleep 30")
        result = await supervisor.stop("bg_9")

        assert result.found is False
        assert result.known_ids == ["bg_1"]
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_logs_do_not_consume_or_stop(tmp_path: Path):
    supervisor = _supervisor(tmp_path)
    try:
        started = await supervisor.run("echo one; echo two; echo three; sleep 30")

        first = supervisor.logs(started.process_id)
        second = supervisor.logs(started.process_id)
        tail = supervisor.logs(started.process_id, tail=1)

        assert first.status == "running"
        assert first.output == second.output
        assert first.output.splitlines() == ["one", "two", "three"]
        assert tail.output == "three"
        assert supervisor.get(started.process_id).running is True
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_exited_background_process_stays_listed_until_stopped(tmp_path: Path):
    supervisor = _supervisor(tmp_path)
    try:
        started = await supervisor.run("sleep 0.8; echo finished")
        await asyncio.sleep(1.5)

        logs = supervisor.logs(started.process_id)
        assert logs.status == "exited"
        assert logs.exit_code == 0
        assert "finished" in logs.output

        stopped = await supervisor.stop(started.process_id)
        assert stopped.was_running is False
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_send_input_answers_interactive_prompt(tmp_path: Path):
    supervisor = _supervisor(tmp_path)
    try:
        started = await supervisor.run("echo 'name?'; read name; echo \"hello $name\"; sleep 30")
        assert started.status == "backgrounded"

        answered = await supervisor.send_input(started.process_id, "world")

        assert answered.sent is True
        assert "hello world" in answered.output
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_send_input_to_unknown_process(tmp_path: Path):
    supervisor = _supervisor(tmp_path)
    result = await supervisor.send_input("bg_1", "y")

    assert result.found is False
    assert result.known_ids == []


@pytest.mark.asyncio
async def test_matching_server_preempts_previous_instance(tmp_path: Path):
    supervisor = _supervisor(tmp_path, server_patterns={"fake-dev-server": r"fake-dev-server"})
    try:
        first = await supervisor.run("echo fake-dev-server; sleep 30")
        second = await supervisor.run("echo fake-dev-server; sleep 30")

        assert first.process_id == "bg_1"
        assert second.process_id == "bg_2"
        assert second.auto_stopped == ["bg_1"]
        assert [info.id for info in supervisor.list()] == ["bg_2"]
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_bare_cd_changes_tracked_directory(tmp_path: Path):
    (tmp_path / "sub").mkdir()
    supervisor = _supervisor(tmp_path)

    moved = await supervisor.run("cd sub")
    missing = await supervisor.run("cd nowhere")

    assert moved.status == "cd"
    assert supervisor.cwd == (tmp_path / "sub").resolve()
    assert missing.status == "failed"
    assert supervisor.cwd == (tmp_path / "sub").resolve()


@pytest.mark.asyncio
async def test_compound_cd_runs_in_subshell(tmp_path: Path):
    (tmp_path / "sub").mkdir()
    supervisor = _supervisor(tmp_path)
    try:
        result = await supervisor.run("cd sub && pwd")

        assert result.status == "completed"
        assert result.output.strip().endswith("sub")
        assert supervisor.cwd == tmp_path.resolve()
    finally:
        await supervisor.shutdown()


def test_detect_port_patterns():
    assert detect_port("Server running at http://127.0.0.1:8000/") == 8000
    assert detect_port("vite --port 3001") == 3001
    assert detect_port("listening on port 4000") == 4000
    assert detect_port("python -m http.server 8080") == 8080
    assert detect_port("compiled 42 modules") is None


def test_match_server_names_dev_server_commands(tmp_path: Path):
    supervisor = _supervisor(tmp_path)

    assert supervisor.match_server("npm run dev") == "node-dev"
    assert supervisor.match_server("python3 -m http.server 8000") == "python-http"
    assert supervisor.match_server("pytest -q") is None
