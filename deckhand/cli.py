"""Terminal UI for Deckhand."""

import asyncio
import json
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.text import Text

from deckhand import __version__
from deckhand.commands import HELP_TEXT
from deckhand.logging import get_logger
from deckhand.permissions import PermissionDecision, parse_decision

log = get_logger(__name__)

_TOOL_RESULT_PREVIEW_CHARS = 400
_ARGUMENT_PREVIEW_CHARS = 600


def _format_arguments(arguments: dict[str, Any], limit: int = _ARGUMENT_PREVIEW_CHARS) -> str:
    parts: list[str] = []
    for key, value in arguments.items():
        text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        if len(text) > limit:
            text = text[:limit] + f"... [{len(text) - limit} more chars]"
        parts.append(f"{key}: {text}")
    return "\n".join(parts) or "(no arguments)"


class TerminalUI:
    """Terminal UI using rich."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console(highlight=False)
        self._runtime_status = "idle"
        self._permission_prompt: asyncio.Future[PermissionDecision] | None = None

    def print_welcome(self, provider: str, model: str, cwd: Path | str) -> None:
        self.console.print(
            Panel(
                Text.assemble(
                    (f"Deckhand v{__version__}\n", "bold"),
                    f"{provider}/{model}\n",
                    (str(cwd), "dim"),
                ),
                expand=False,
            )
        )
        self.console.print("Type /help for commands, Ctrl+C cancels the running turn.\n")

    def print_help(self) -> None:
        self.console.print(HELP_TEXT)

    def print_message(self, role: str, content: str) -> None:
        """Print a message with styling."""
        if role == "assistant":
            if content.strip():
                self.console.print(Markdown(content))
            return
        if role == "user":
            self.console.print(Text(f"> {content}", style="bold cyan"))
            return
        if role == "tool":
            self.print_tool_result("tool", content)
            return
        self.print_notice(content)

    def print_notice(self, text: str) -> None:
        style = "red" if text.startswith("Error") else "yellow"
        self.console.print(Text(text, style=style))

    def print_error(self, error: str) -> None:
        self.console.print(Text(f"Error: {error}", style="bold red"))

    def print_warning(self, warning: str) -> None:
        self.console.print(Text(f"Warning: {warning}", style="yellow"))

    def print_success(self, message: str) -> None:
        self.console.print(Text(message, style="green"))

    def print_info(self, message: str) -> None:
        self.console.print(Text(message))

    def print_tool_result(self, tool_name: str, result: str) -> None:
        """Print the first part of a tool result."""
        preview = result.strip()
        if len(preview) > _TOOL_RESULT_PREVIEW_CHARS:
            preview = preview[:_TOOL_RESULT_PREVIEW_CHARS] + " ..."
        style = "red" if preview.startswith(("Error", "Permission denied")) else "dim"
        self.console.print(Text(f"[{tool_name}] ", style="bold magenta") + Text(preview, style=style))

    def print_usage(self, usage: dict[str, int]) -> None:
        pct = int(usage.get("percentage", 0))
        style = "green" if pct < 60 else "yellow" if pct < 80 else "red"
        self.console.print(
            Text(
                f"context {usage.get('used_tokens', 0):,}/{usage.get('max_tokens', 0):,} tokens ({pct}%)",
                style=style,
            )
        )

    def set_runtime_status(self, status: str) -> None:
        if status == self._runtime_status:
            return
        self._runtime_status = status
        if status.startswith("running "):
            self.console.print(Text(f"... {status}", style="dim"))

    def prompt(self, prompt_text: str = "> ") -> str:
        """Prompt for input."""
        return self.console.input(Text(prompt_text, style="bold cyan"))

    def confirm(self, message: str, default: bool = True) -> bool:
        return Confirm.ask(message, console=self.console, default=default)

    def ask_permission(self, tool_name: str, arguments: dict[str, Any]) -> PermissionDecision:
        """Block until the operator answers y/n/a for a dangerous tool call."""
        self.console.print(
            Panel(
                _format_arguments(arguments),
                title=f"Allow {tool_name}?",
                title_align="left",
                border_style="yellow",
                expand=False,
            )
        )
        while True:
            answer = Prompt.ask(
                "[y]es / [n]o / [a]lways for this session",
                console=self.console,
                choices=["y", "n", "a"],
                show_choices=False,
                default="n",
            )
            decision = parse_decision(answer)
            if decision is not None:
                return decision

    async def ask_permission_async(self, tool_name: str, arguments: dict[str, Any]) -> PermissionDecision:
        """Run ``ask_permission`` in a worker thread.

        Cancelling the caller cannot interrupt the thread's blocking read, so
        the prompt stays tracked until ``dismiss_stale_prompt`` collects it.
        """
        self._permission_prompt = asyncio.ensure_future(
            asyncio.to_thread(self.ask_permission, tool_name, arguments)
        )
        return await asyncio.shield(self._permission_prompt)

    async def dismiss_stale_prompt(self) -> None:
        """Wait out a permission prompt left open by a cancelled turn; its answer is discarded."""
        task, self._permission_prompt = self._permission_prompt, None
        if task is None:
            return
        if not task.done():
            self.print_warning("The cancelled permission prompt is still open; press Enter to dismiss it.")
        try:
            await task
        except Exception as e:
            log.debug("Stale permission prompt ended with an error", error=str(e))
