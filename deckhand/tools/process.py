"""Process tools backed by the ProcessSupervisor."""

from typing import Any

from deckhand.logging import get_logger
from deckhand.process_supervisor import (
    CommandResult,
    ProcessInfo,
    ProcessSupervisor,
)
from deckhand.tools.registry import Tool, ToolResult

log = get_logger(__name__)

_PROCESS_ID_SCHEMA = {
    "type": "string",
    "description": "The process ID returned when the command was backgrounded (e.g. bg_1)",
}


def _known_ids_text(known_ids: list[str]) -> str:
    return ", ".join(known_ids) if known_ids else "(none)"


def _not_found(process_id: str, known_ids: list[str]) -> ToolResult:
    return ToolResult(
        success=False,
        error=f"No background process with id '{process_id}'. Known ids: {_known_ids_text(known_ids)}",
    )


def format_command_result(result: CommandResult) -> ToolResult:
    """Render a ``CommandResult`` as ``KEY: value`` headers plus output."""
    header = [f"Command: {result.command}", f"Cwd: {result.cwd}"]
    if result.auto_stopped:
        header.append(f"Auto-stopped: {', '.join(result.auto_stopped)}")

    if result.status == "failed":
        return ToolResult(success=False, error=result.error, content="\n".join(header))

    if result.status == "backgrounded":
        header.insert(0, f"Status: running in background as {result.process_id}")
        header.append(f"Process ID: {result.process_id}")
        if result.port:
            header.append(f"Port: {result.port}")
        body = result.preview or "(no output yet)"
        return ToolResult(
            success=True,
            content=(
                "\n".join(header)
                + "\n\nOutput preview:\n"
                + body
                + "\n\nUse get_logs to check progress, send_input to answer prompts, "
                "stop_process to terminate it."
            ),
        )

    header.insert(0, f"Exit code: {result.exit_code}")
    return ToolResult(
        success=result.exit_code == 0,
        content="\n".join(header) + "\n\nOutput:\n" + (result.output.strip() or "[no output]"),
    )


def format_process_list(infos: list[ProcessInfo]) -> str:
    if not infos:
        return "No background processes."
    return "\n".join(info.describe() for info in infos)


class RunCommandTool(Tool):
    """Run shell commands through the supervisor."""

    name = "run_command"
    description = (
        "Run a shell command. If the command runs longer than 15 seconds (e.g. a dev server), "
        "it is automatically backgrounded and a process ID is returned. "
        "Use stop_process to terminate it. A lone `cd <dir>` changes the working directory."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "Shell command to execute",
            },
            "cwd": {
                "type": "string",
                "description": "Working directory (optional, defaults to the current one)",
            },
        },
        "required": ["command"],
    }

    def __init__(self, supervisor: ProcessSupervisor):
        self.supervisor = supervisor
        self.timeout_seconds = float(supervisor.foreground_timeout) + 30.0
        self.description = self.description.replace(
            "15 seconds", f"{supervisor.foreground_timeout:g} seconds"
        )

    async def execute(self, command: str, cwd: str | None = None, **kwargs: Any) -> ToolResult:
        result = await self.supervisor.run(command, cwd=cwd)
        return format_command_result(result)


class StopProcessTool(Tool):
    """Stop a background process."""

    name = "stop_process"
    description = (
        "Stop a background process by its ID. Returns the process output collected during "
        "its lifetime. Use list_processes to see active processes."
    )
    parameters = {
        "type": "object",
        "properties": {"process_id": _PROCESS_ID_SCHEMA},
        "required": ["process_id"],
    }

    def __init__(self, supervisor: ProcessSupervisor):
        self.supervisor = supervisor
        self.timeout_seconds = float(supervisor.stop_grace_seconds) + 30.0

    async def execute(self, process_id: str, **kwargs: Any) -> ToolResult:
        result = await self.supervisor.stop(process_id)
        if not result.found:
            return _not_found(result.process_id, result.known_ids)
        state = "stopped" if result.was_running else "already exited"
        lines = [
            f"Process: {result.process_id}",
            f"Status: {state}",
            f"Exit code: {result.exit_code}",
        ]
        if result.port:
            lines.append(f"Port: {result.port}")
        return ToolResult(
            success=True,
            content="\n".join(lines) + "\n\nOutput:\n" + (result.output.strip() or "[no output]"),
        )


class ListProcessesTool(Tool):
    """List background processes."""

    name = "list_processes"
    description = "List all background processes with their IDs, status, runtime, and command."
    parameters = {
        "type": "object",
        "properties": {},
        "required": [],
    }

    def __init__(self, supervisor: ProcessSupervisor):
        self.supervisor = supervisor

    async def execute(self, **kwargs: Any) -> ToolResult:
        infos = self.supervisor.list()
        return ToolResult(
            success=True,
            content=f"Processes: {len(infos)}\n\n{format_process_list(infos)}",
        )


class GetLogsTool(Tool):
    """Read background process output without stopping it."""

    name = "get_logs"
    description = (
        "Show recent output of a background process without stopping it. "
        "Returns status, port and the last lines of output."
    )
    parameters = {
        "type": "object",
        "properties": {
            "process_id": _PROCESS_ID_SCHEMA,
            "tail": {
                "type": "integer",
                "description": "Number of trailing lines to return (default 50)",
            },
        },
        "required": ["process_id"],
    }

    def __init__(self, supervisor: ProcessSupervisor):
        self.supervisor = supervisor

    async def execute(self, process_id: str, tail: int | None = None, **kwargs: Any) -> ToolResult:
        try:
            tail_lines = int(tail) if tail is not None else None
        except (TypeError, ValueError):
            tail_lines = None
        result = self.supervisor.logs(process_id, tail=tail_lines)
        if not result.found:
            return _not_found(result.process_id, result.known_ids)
        lines = [
            f"Process: {result.process_id}",
            f"Status: {result.status}",
            f"Runtime: {result.runtime_seconds:.0f}s",
            f"Lines: {result.total_lines}",
        ]
        if result.exit_code is not None:
            lines.append(f"Exit code: {result.exit_code}")
        if result.port:
            lines.append(f"Port: {result.port}")
        return ToolResult(
            success=True,
            content="\n".join(lines) + "\n\nOutput:\n" + (result.output or "[no output]"),
        )


class SendInputTool(Tool):
    """Send a line of input to a background process."""

    name = "send_input"
    description = (
        "Send a line of text to the standard input of a running background process, "
        "for example to answer an interactive prompt. Returns the output that follows."
    )
    parameters = {
        "type": "object",
        "properties": {
            "process_id": _PROCESS_ID_SCHEMA,
            "input": {
                "type": "string",
                "description": "Text to send; a newline is appended automatically",
            },
        },
        "required": ["process_id", "input"],
    }

    def __init__(self, supervisor: ProcessSupervisor):
        self.supervisor = supervisor
        self.timeout_seconds = float(supervisor.send_input_wait) + 30.0

    async def execute(self, process_id: str, input: str, **kwargs: Any) -> ToolResult:
        result = await self.supervisor.send_input(process_id, input)
        if not result.found:
            return _not_found(result.process_id, result.known_ids)
        if not result.sent:
            return ToolResult(success=False, error=result.error)
        return ToolResult(
            success=True,
            content=(
                f"Process: {result.process_id}\n"
                f"Sent: {input!r}\n\n"
                f"Output:\n{result.output or '[no output]'}"
            ),
        )
