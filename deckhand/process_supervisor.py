"""Shell command execution with promotion of long runners to background processes."""

import asyncio
import codecs
import os
import re
import shlex
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from deckhand.logging import get_logger

log = get_logger(__name__)

# Dev-server launches keyed by a name; two commands with the same name compete for a port.
DEFAULT_SERVER_PATTERNS: dict[str, str] = {
    "node-dev": r"\b(?:npm|yarn|pnpm|bun)\s+(?:run\s+)?(?:dev|start|serve|preview)\b",
    "vite": r"\bvite(?:\s|$)",
    "next": r"\bnext\s+(?:dev|start)\b",
    "nuxt": r"\bnux[ti]\s+dev\b",
    "webpack": r"\bwebpack(?:-dev-server|\s+serve)\b",
    "python-http": r"\bpython3?\s+-m\s+http\.server\b",
    "flask": r"\bflask\s+run\b",
    "uvicorn": r"\buvicorn\s+\S+",
    "django": r"\bmanage\.py\s+runserver\b",
    "rails": r"\brails\s+(?:server|s)\b",
    "php": r"\bphp\s+-S\b",
    "static": r"\b(?:http-server|live-server)\b",
}

_PORT_PATTERNS = (
    re.compile(r"(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::\]):(\d{2,5})\b"),
    re.compile(r"--port[=\s]+(\d{2,5})\b", re.IGNORECASE),
    re.compile(r"(?:^|\s)-p\s+(\d{2,5})\b"),
    re.compile(r"\bport\s*[:=]?\s*(\d{4,5})\b", re.IGNORECASE),
    re.compile(r"\bhttp\.server\s+(\d{2,5})\b"),
)

_SHELL_CONTROL_CHARS = set(";&|<>`$()")
_READ_CHUNK_BYTES = 4096
_EXIT_DRAIN_SECONDS = 1.0
_KILL_WAIT_SECONDS = 5.0


def detect_port(text: str) -> int | None:
    """Best-effort port number from a command line or server output."""
    for pattern in _PORT_PATTERNS:
        for match in pattern.finditer(text or ""):
            port = int(match.group(1))
            if 0 < port <= 65535:
                return port
    return None


def _process_sort_key(process_id: str) -> tuple[int, str]:
    _, _, suffix = process_id.partition("_")
    return (int(suffix) if suffix.isdigit() else 0, process_id)


def _tail_lines(text: str, lines: int) -> str:
    if lines <= 0:
        return ""
    return "\n".join(text.splitlines()[-lines:])


def _tail_chars(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    dropped = len(text) - max_chars
    return f"... [{dropped} earlier chars omitted]\n{text[-max_chars:]}"


@dataclass
class BackgroundProcess:
    """A spawned command tracked by the supervisor."""

    id: str
    command: str
    cwd: str
    started_at: float
    process: asyncio.subprocess.Process | None = None
    output: str = ""
    running: bool = True
    exit_code: int | None = None
    port: int | None = None
    server_kind: str | None = None
    finished_at: float | None = None
    _collector: asyncio.Task[None] | None = field(default=None, repr=False)
    _readers: list[asyncio.Task[None]] = field(default_factory=list, repr=False)
    _exit_task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def runtime_seconds(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return max(0.0, end - self.started_at)

    @property
    def status(self) -> str:
        return "running" if self.running else "exited"


@dataclass
class ProcessInfo:
    """Read-only snapshot of a tracked process."""

    id: str
    status: str
    pid: int | None
    port: int | None
    runtime_seconds: float
    command: str
    exit_code: int | None = None

    def describe(self) -> str:
        parts = [f"{self.id}: {self.command}", f"[{self.status}"]
        if self.exit_code is not None:
            parts[-1] += f", exit {self.exit_code}"
        parts[-1] += "]"
        if self.port:
            parts.append(f"port {self.port}")
        parts.append(f"pid {self.pid}" if self.pid else "pid ?")
        parts.append(f"{self.runtime_seconds:.0f}s")
        return " ".join(parts)


@dataclass
class CommandResult:
    """Outcome of ``ProcessSupervisor.run``."""

    status: str  # "completed", "backgrounded", "cd", "failed"
    command: str
    cwd: str
    exit_code: int | None = None
    output: str = ""
    process_id: str | None = None
    port: int | None = None
    preview: str = ""
    auto_stopped: list[str] = field(default_factory=list)
    error: str = ""


@dataclass
class StopResult:
    found: bool
    process_id: str
    known_ids: list[str] = field(default_factory=list)
    was_running: bool = False
    exit_code: int | None = None
    port: int | None = None
    output: str = ""


@dataclass
class LogsResult:
    found: bool
    process_id: str
    known_ids: list[str] = field(default_factory=list)
    status: str = ""
    output: str = ""
    total_lines: int = 0
    port: int | None = None
    runtime_seconds: float = 0.0
    exit_code: int | None = None


@dataclass
class InputResult:
    found: bool
    process_id: str
    known_ids: list[str] = field(default_factory=list)
    sent: bool = False
    error: str = ""
    output: str = ""


class ProcessSupervisor:
    """Runs shell commands and owns the registry of background processes.

    A command that finishes within ``foreground_timeout`` returns its result
    directly. Anything still running is registered under the next ``bg_<n>``
    id and keeps streaming output into its buffer until it is stopped.
    """

    def __init__(
        self,
        cwd: Path | str | None = None,
        foreground_timeout: float = 15.0,
        stop_grace_seconds: float = 3.0,
        preview_chars: int = 300,
        stop_output_max_chars: int = 8000,
        send_input_wait: float = 1.5,
        logs_tail_lines: int = 50,
        server_patterns: dict[str, str] | None = None,
        port_detector: Callable[[str], int | None] | None = None,
    ):
        self.cwd = Path(cwd or Path.cwd()).expanduser().resolve()
        self.foreground_timeout = foreground_timeout
        self.stop_grace_seconds = stop_grace_seconds
        self.preview_chars = preview_chars
        self.stop_output_max_chars = stop_output_max_chars
        self.send_input_wait = send_input_wait
        self.logs_tail_lines = logs_tail_lines
        patterns = DEFAULT_SERVER_PATTERNS if server_patterns is None else server_patterns
        self.server_patterns = {
            name: re.compile(pattern, re.IGNORECASE) for name, pattern in patterns.items()
        }
        self.port_detector = port_detector or detect_port
        self._processes: dict[str, BackgroundProcess] = {}
        self._next_id = 0

    @classmethod
    def from_config(cls, config: Any, cwd: Path | str | None = None) -> "ProcessSupervisor":
        proc = config.process
        return cls(
            cwd=cwd,
            foreground_timeout=proc.foreground_timeout,
            stop_grace_seconds=proc.stop_grace_seconds,
            preview_chars=proc.preview_chars,
            stop_output_max_chars=proc.stop_output_max_chars,
            send_input_wait=proc.send_input_wait,
            logs_tail_lines=proc.logs_tail_lines,
        )

    @property
    def known_ids(self) -> list[str]:
        return sorted(self._processes, key=_process_sort_key)

    def get(self, process_id: str) -> BackgroundProcess | None:
        return self._processes.get(str(process_id or "").strip())

    def match_server(self, command: str) -> str | None:
        """Name of the server pattern a command matches, if any."""
        for name, pattern in self.server_patterns.items():
            if pattern.search(command or ""):
                return name
        return None

    def _resolve_cwd(self, cwd: Path | str | None) -> Path:
        if not cwd:
            return self.cwd
        requested = Path(str(cwd)).expanduser()
        if not requested.is_absolute():
            requested = self.cwd / requested
        return requested.resolve()

    @staticmethod
    def _bare_cd_target(command: str) -> str | None:
        """Target of a lone ``cd`` command, ``""`` for plain ``cd``, else None."""
        if any(ch in _SHELL_CONTROL_CHARS for ch in command):
            return None
        try:
            tokens = shlex.split(command)
        except ValueError:
            return None
        if not tokens or tokens[0] != "cd" or len(tokens) > 2:
            return None
        return tokens[1] if len(tokens) == 2 else ""

    def _change_directory(self, command: str, target: str) -> CommandResult:
        destination = Path.home() if not target else self._resolve_cwd(target)
        if not destination.is_dir():
            return CommandResult(
                status="failed",
                command=command,
                cwd=str(self.cwd),
                exit_code=1,
                error=f"No such directory: {destination}",
            )
        self.cwd = destination.resolve()
        log.info("Working directory changed", cwd=str(self.cwd))
        return CommandResult(
            status="cd",
            command=command,
            cwd=str(self.cwd),
            exit_code=0,
            output=f"Changed directory to {self.cwd}",
        )

    async def run(self, command: str, cwd: Path | str | None = None) -> CommandResult:
        """Run a command, returning its result or promoting it to the background."""
        command = str(command or "").strip()
        cd_target = self._bare_cd_target(command)
        if cd_target is not None:
            return self._change_directory(command, cd_target)

        workdir = self._resolve_cwd(cwd)
        if not workdir.is_dir():
            return CommandResult(
                status="failed",
                command=command,
                cwd=str(workdir),
                error=f"Working directory does not exist: {workdir}",
            )

        server_kind = self.match_server(command)
        auto_stopped: list[str] = []
        if server_kind:
            auto_stopped = await self._preempt_servers(server_kind, self.port_detector(command))

        try:
            entry = await self._spawn(command, workdir)
        except OSError as e:
            log.error("Failed to spawn command", command=command, error=str(e))
            return CommandResult(
                status="failed",
                command=command,
                cwd=str(workdir),
                error=str(e),
                auto_stopped=auto_stopped,
            )
        entry.server_kind = server_kind

        assert entry._exit_task is not None
        done, _ = await asyncio.wait({entry._exit_task}, timeout=self.foreground_timeout)
        if done:
            await self._release(entry)
            return CommandResult(
                status="completed",
                command=command,
                cwd=str(workdir),
                exit_code=entry.exit_code,
                output=_tail_chars(entry.output, self.stop_output_max_chars),
                auto_stopped=auto_stopped,
            )

        self._next_id += 1
        entry.id = f"bg_{self._next_id}"
        entry.port = self.port_detector(command) or self.port_detector(entry.output)
        self._processes[entry.id] = entry
        log.info(
            "Command moved to background",
            process_id=entry.id,
            command=command,
            port=entry.port,
        )
        return CommandResult(
            status="backgrounded",
            command=command,
            cwd=str(workdir),
            process_id=entry.id,
            port=entry.port,
            preview=entry.output[: self.preview_chars],
            auto_stopped=auto_stopped,
        )

    async def _preempt_servers(self, server_kind: str, port: int | None) -> list[str]:
        """Stop running servers started by the same kind of command or on the same port."""
        stopped: list[str] = []
        for process_id in self.known_ids:
            entry = self._processes[process_id]
            if not entry.running:
                continue
            same_kind = entry.server_kind == server_kind
            same_port = port is not None and entry.port == port
            if same_kind or same_port:
                log.info("Stopping previous server", process_id=process_id, kind=server_kind, port=port)
                await self.stop(process_id)
                stopped.append(process_id)
        return stopped

    async def _spawn(self, command: str, workdir: Path) -> BackgroundProcess:
        kwargs: dict[str, Any] = {}
        if os.name == "posix":
            kwargs["start_new_session"] = True
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workdir),
            **kwargs,
        )
        entry = BackgroundProcess(
            id="",
            command=command,
            cwd=str(workdir),
            started_at=time.time(),
            process=process,
        )
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        streams = [s for s in (process.stdout, process.stderr) if s is not None]
        entry._readers = [asyncio.create_task(self._pump(stream, queue)) for stream in streams]
        entry._collector = asyncio.create_task(self._collect(entry, queue, len(streams)))
        entry._exit_task = asyncio.create_task(self._watch_exit(entry))
        log.debug("Spawned command", command=command, pid=process.pid, cwd=str(workdir))
        return entry

    @staticmethod
    async def _pump(stream: asyncio.StreamReader, queue: "asyncio.Queue[str | None]") -> None:
        """Forward decoded chunks from one pipe to the process queue."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await stream.read(_READ_CHUNK_BYTES)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    await queue.put(text)
            tail = decoder.decode(b"", final=True)
            if tail:
                await queue.put(tail)
        except (ConnectionResetError, BrokenPipeError) as e:
            log.debug("Output pipe closed", error=str(e))
        finally:
            await queue.put(None)

    @staticmethod
    async def _collect(
        entry: BackgroundProcess,
        queue: "asyncio.Queue[str | None]",
        stream_count: int,
    ) -> None:
        """Single writer for ``entry.output``."""
        closed = 0
        while closed < stream_count:
            item = await queue.get()
            if item is None:
                closed += 1
                continue
            entry.output += item

    async def _watch_exit(self, entry: BackgroundProcess) -> None:
        assert entry.process is not None
        exit_code = await entry.process.wait()
        if entry._collector is not None:
            # Grandchildren can hold the pipes open after the shell exits.
            await asyncio.wait({entry._collector}, timeout=_EXIT_DRAIN_SECONDS)
        entry.exit_code = exit_code
        entry.running = False
        entry.finished_at = time.time()
        log.debug("Process exited", process_id=entry.id or None, exit_code=exit_code)

    def _signal(self, entry: BackgroundProcess, sig: int) -> None:
        process = entry.process
        if process is None or process.returncode is not None:
            return
        try:
            if os.name == "posix":
                os.killpg(process.pid, sig)
            elif sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except ProcessLookupError:
            pass

    async def _terminate(self, entry: BackgroundProcess) -> None:
        """SIGTERM the process group, SIGKILL once the grace period runs out."""
        if entry._exit_task is None:
            return
        self._signal(entry, signal.SIGTERM)
        done, _ = await asyncio.wait({entry._exit_task}, timeout=self.stop_grace_seconds)
        if done:
            return
        log.info("Process ignored SIGTERM, killing", process_id=entry.id)
        self._signal(entry, getattr(signal, "SIGKILL", signal.SIGTERM))
        await asyncio.wait({entry._exit_task}, timeout=_KILL_WAIT_SECONDS)

    async def _release(self, entry: BackgroundProcess) -> None:
        tasks = [*entry._readers, entry._collector]
        for task in tasks:
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(*(t for t in tasks if t is not None), return_exceptions=True)
        process = entry.process
        if process is not None and process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

    async def stop(self, process_id: str) -> StopResult:
        """Terminate a tracked process (if running) and remove it from the registry."""
        key = str(process_id or "").strip()
        entry = self._processes.get(key)
        if entry is None:
            return StopResult(found=False, process_id=key, known_ids=self.known_ids)

        was_running = entry.running
        if was_running:
            await self._terminate(entry)
        await self._release(entry)
        self._processes.pop(key, None)
        log.info("Process stopped", process_id=key, was_running=was_running, exit_code=entry.exit_code)
        return StopResult(
            found=True,
            process_id=key,
            known_ids=self.known_ids,
            was_running=was_running,
            exit_code=entry.exit_code,
            port=entry.port,
            output=_tail_chars(entry.output, self.stop_output_max_chars),
        )

    def logs(self, process_id: str, tail: int | None = None) -> LogsResult:
        """Current status and output tail; leaves the process untouched."""
        key = str(process_id or "").strip()
        entry = self._processes.get(key)
        if entry is None:
            return LogsResult(found=False, process_id=key, known_ids=self.known_ids)
        lines = self.logs_tail_lines if tail is None else max(1, int(tail))
        return LogsResult(
            found=True,
            process_id=key,
            known_ids=self.known_ids,
            status=entry.status,
            output=_tail_lines(entry.output, lines),
            total_lines=len(entry.output.splitlines()),
            port=entry.port,
            runtime_seconds=entry.runtime_seconds,
            exit_code=entry.exit_code,
        )

    async def send_input(self, process_id: str, text: str) -> InputResult:
        """Write a line to the process's stdin and return what it printed next."""
        key = str(process_id or "").strip()
        entry = self._processes.get(key)
        if entry is None:
            return InputResult(found=False, process_id=key, known_ids=self.known_ids)

        stdin = entry.process.stdin if entry.process is not None else None
        if not entry.running:
            return InputResult(
                found=True,
                process_id=key,
                known_ids=self.known_ids,
                error=f"Process {key} is not running (exit code {entry.exit_code})",
            )
        if stdin is None or stdin.is_closing():
            return InputResult(
                found=True,
                process_id=key,
                known_ids=self.known_ids,
                error=f"Process {key} has no open input stream",
            )

        payload = str(text or "")
        if not payload.endswith("\n"):
            payload += "\n"
        mark = len(entry.output)
        try:
            stdin.write(payload.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            return InputResult(
                found=True,
                process_id=key,
                known_ids=self.known_ids,
                error=f"Failed to write to {key}: {e}",
            )

        await asyncio.sleep(self.send_input_wait)
        fresh = entry.output[mark:]
        return InputResult(
            found=True,
            process_id=key,
            known_ids=self.known_ids,
            sent=True,
            output=fresh if fresh.strip() else _tail_lines(entry.output, 20),
        )

    def list(self) -> list[ProcessInfo]:
        return [
            ProcessInfo(
                id=entry.id,
                status=entry.status,
                pid=entry.pid,
                port=entry.port,
                runtime_seconds=entry.runtime_seconds,
                command=entry.command,
                exit_code=entry.exit_code,
            )
            for entry in (self._processes[pid] for pid in self.known_ids)
        ]

    async def shutdown(self) -> None:
        """Stop every tracked process."""
        for process_id in self.known_ids:
            await self.stop(process_id)
