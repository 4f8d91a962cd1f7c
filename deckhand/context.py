"""Context budget: keeps a conversation under the model's token ceiling.

Three passes run in order and stop as soon as the estimate fits within the
headroom budget (80% of the ceiling by default):

1. truncate long tool results, keeping their ``KEY: value`` header lines
2. prune old tool results outside the protected tail
3. compact the whole history into a notice + summary pair
"""

import json
import math
import platform
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from deckhand.config import Config, ModelConfig
from deckhand.conversation import Conversation
from deckhand.instructions import (
    COMPACTION_NOTICE,
    COMPACTION_SYSTEM_PROMPT,
    COMPACTION_USER_PROMPT,
    InstructionLoader,
)
from deckhand.llm import LLMProvider, Message, estimate_tokens
from deckhand.logging import get_logger

if TYPE_CHECKING:
    from deckhand.process_supervisor import ProcessSupervisor
    from deckhand.session import SessionStore

log = get_logger(__name__)

DEFAULT_CONTEXT_WINDOW = 32768

# Architectural context sizes for common models; config entries take precedence.
KNOWN_CONTEXT_WINDOWS = {
    "qwen-2.5-coder-32b": 131072,
    "llama-3.3-70b-versatile": 131072,
    "llama-3.1-8b-instant": 131072,
    "mixtral-8x7b-32768": 32768,
    "gemma2-9b-it": 8192,
}

TRUNCATION_MARKER_RE = re.compile(r"\.\.\. \[truncated \d+ chars\]")
_HEADER_LINE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9 _./()-]{0,40}:\s*\S")
_MAX_HEADER_LINES = 12
_MAX_HEADER_LINE_CHARS = 240
_MESSAGE_OVERHEAD_TOKENS = 4
_TOOL_CALL_OVERHEAD_TOKENS = 4


def estimate_message_tokens(
    messages: list[Message],
    count_tokens: Callable[[str], int] = estimate_tokens,
) -> int:
    """Estimate total tokens for a message list, including per-message overhead."""
    total = 0
    for msg in messages:
        total += count_tokens(msg.content or "") + _MESSAGE_OVERHEAD_TOKENS
        for call in msg.tool_calls or []:
            total += count_tokens(call.name)
            total += count_tokens(json.dumps(call.arguments, ensure_ascii=False))
            total += _TOOL_CALL_OVERHEAD_TOKENS
    return total


def resolve_context_ceiling(
    model: str,
    model_config: ModelConfig | None = None,
    tpm_limit: int | None = None,
    default: int = DEFAULT_CONTEXT_WINDOW,
) -> int:
    """Effective token ceiling: ``min(context window, tokens-per-minute limit)``.

    A single request must fit inside the backend's rate window, so a known TPM
    limit caps the ceiling even when the model's window is larger.
    """
    window: int | None = None
    tpm = tpm_limit
    if model_config is not None:
        if model_config.model == model:
            window = model_config.context_window
            tpm = tpm or model_config.tpm_limit
        for entry in model_config.allowed:
            if model in (entry.model, entry.id):
                window = window or entry.context_window
                tpm = tpm or entry.tpm_limit
                break
    window = window or KNOWN_CONTEXT_WINDOWS.get(model) or default
    if tpm and tpm > 0:
        return min(window, tpm)
    return window


def truncate_tool_content(content: str, keep_chars: int = 200) -> str:
    """Collapse a tool result to its leading header lines plus a short body prefix."""
    lines = content.splitlines()
    headers: list[str] = []
    idx = 0
    while idx < len(lines) and len(headers) < _MAX_HEADER_LINES:
        line = lines[idx]
        if not _HEADER_LINE_RE.match(line):
            break
        headers.append(line[:_MAX_HEADER_LINE_CHARS])
        idx += 1

    body = "\n".join(lines[idx:]).strip()
    kept = body[:keep_chars].rstrip()
    dropped = len(body) - len(kept)
    parts = [*headers]
    if headers and kept:
        parts.append("")
    if kept:
        parts.append(kept)
    parts.append(f"... [truncated {dropped} chars]")
    return "\n".join(parts)


@dataclass
class BudgetReport:
    """What the last ``ensure_fits`` pass did."""

    budget_tokens: int = 0
    before_tokens: int = 0
    after_tokens: int = 0
    truncated: int = 0
    pruned: int = 0
    summarized: bool = False
    compaction_attempted: bool = False

    @property
    def fits(self) -> bool:
        return self.after_tokens <= self.budget_tokens


class ContextBudgetManager:
    """Mutates a conversation in place until it fits the token budget."""

    def __init__(
        self,
        provider: LLMProvider,
        store: "SessionStore | None" = None,
        supervisor: "ProcessSupervisor | None" = None,
        instructions: InstructionLoader | None = None,
        count_tokens: Callable[[str], int] | None = None,
        headroom_ratio: float = 0.8,
        truncate_threshold_chars: int = 800,
        truncate_keep_chars: int = 200,
        prune_keep_tail: int = 8,
        summary_max_chars: int = 48000,
        summary_max_tokens: int = 2048,
    ):
        self.provider = provider
        self.store = store
        self.supervisor = supervisor
        self.instructions = instructions or InstructionLoader()
        self.count_tokens = count_tokens or provider.count_tokens
        self.headroom_ratio = min(max(headroom_ratio, 0.05), 1.0)
        self.truncate_threshold_chars = truncate_threshold_chars
        self.truncate_keep_chars = truncate_keep_chars
        self.prune_keep_tail = max(0, prune_keep_tail)
        self.summary_max_chars = summary_max_chars
        self.summary_max_tokens = summary_max_tokens
        self.last_report = BudgetReport()

    @classmethod
    def from_config(
        cls,
        config: Config,
        provider: LLMProvider,
        store: "SessionStore | None" = None,
        supervisor: "ProcessSupervisor | None" = None,
        instructions: InstructionLoader | None = None,
    ) -> "ContextBudgetManager":
        ctx = config.context
        return cls(
            provider=provider,
            store=store,
            supervisor=supervisor,
            instructions=instructions,
            headroom_ratio=ctx.headroom_ratio,
            truncate_threshold_chars=ctx.truncate_threshold_chars,
            truncate_keep_chars=ctx.truncate_keep_chars,
            prune_keep_tail=ctx.prune_keep_tail,
            summary_max_chars=ctx.summary_max_chars,
            summary_max_tokens=ctx.summary_max_tokens,
        )

    def estimate(self, conversation: Conversation, reserved_tokens: int = 0) -> int:
        return estimate_message_tokens(conversation.messages, self.count_tokens) + reserved_tokens

    def budget(self, conversation: Conversation) -> int:
        return int(conversation.max_tokens * self.headroom_ratio)

    def fits(self, conversation: Conversation, reserved_tokens: int = 0) -> bool:
        return self.estimate(conversation, reserved_tokens) <= self.budget(conversation)

    def context_usage(self, conversation: Conversation, reserved_tokens: int = 0) -> dict[str, int]:
        used = self.estimate(conversation, reserved_tokens)
        max_tokens = max(1, conversation.max_tokens)
        return {
            "used_tokens": used,
            "max_tokens": max_tokens,
            "percentage": min(100, round(used / max_tokens * 100)),
        }

    def truncate_tool_results(self, conversation: Conversation, reserved_tokens: int = 0) -> int:
        """Shorten long tool results oldest-first until the budget is met."""
        count = 0
        for idx, msg in enumerate(conversation.messages):
            if self.fits(conversation, reserved_tokens):
                break
            if msg.role != "tool" or len(msg.content) <= self.truncate_threshold_chars:
                continue
            if TRUNCATION_MARKER_RE.search(msg.content):
                continue
            shortened = truncate_tool_content(msg.content, self.truncate_keep_chars)
            if len(shortened) >= len(msg.content):
                continue
            msg.content = shortened
            count += 1
        if count:
            log.debug("Truncated tool results", count=count)
        return count

    def prune_tool_results(self, conversation: Conversation, reserved_tokens: int = 0) -> int:
        """Delete tool results oldest-first, never touching the protected tail."""
        removed = 0
        while not self.fits(conversation, reserved_tokens):
            limit = len(conversation.messages) - self.prune_keep_tail
            victim = next(
                (i for i in range(max(0, limit)) if conversation.messages[i].role == "tool"),
                None,
            )
            if victim is None:
                break
            del conversation.messages[victim]
            removed += 1
        if removed:
            log.debug("Pruned tool results", count=removed)
        return removed

    async def ensure_fits(self, conversation: Conversation, reserved_tokens: int = 0) -> bool:
        """Degrade history only as far as needed; True when the result fits."""
        report = BudgetReport(
            budget_tokens=self.budget(conversation),
            before_tokens=self.estimate(conversation, reserved_tokens),
        )
        self.last_report = report

        if report.before_tokens > report.budget_tokens:
            report.truncated = self.truncate_tool_results(conversation, reserved_tokens)
            if not self.fits(conversation, reserved_tokens):
                report.pruned = self.prune_tool_results(conversation, reserved_tokens)
            if not self.fits(conversation, reserved_tokens):
                report.compaction_attempted = True
                report.summarized = await self.compact(conversation)

        report.after_tokens = self.estimate(conversation, reserved_tokens)
        if report.before_tokens != report.after_tokens:
            log.info(
                "Context reduced",
                before=report.before_tokens,
                after=report.after_tokens,
                budget=report.budget_tokens,
                truncated=report.truncated,
                pruned=report.pruned,
                summarized=report.summarized,
            )
        return report.fits

    def _environment_facts(self) -> str:
        cwd = self.supervisor.cwd if self.supervisor is not None else Path.cwd()
        lines = [
            f"- Working directory: {cwd}",
            f"- Platform: {platform.system()} {platform.release()}".rstrip(),
        ]
        processes = self.supervisor.list() if self.supervisor is not None else []
        if processes:
            lines.append("- Background processes:")
            lines.extend(f"  - {info.describe()}" for info in processes)
        else:
            lines.append("- Background processes: none")
        return "\n".join(lines)

    @staticmethod
    def _format_compaction_messages(
        messages: list[Message],
        max_total_chars: int = 48000,
        max_item_chars: int = 1200,
    ) -> str:
        """Format messages for the summary prompt, newest content kept in full."""
        lines: list[str] = []
        for idx, msg in enumerate(messages, start=1):
            role = (msg.role or "").strip().lower() or "unknown"
            label = f"{idx}. {role}"
            if msg.tool_name:
                label += f"({msg.tool_name})"
            content = re.sub(r"\s+", " ", (msg.content or "").strip())
            if len(content) > max_item_chars:
                content = content[:max_item_chars].rstrip() + "... [truncated]"
            if msg.tool_calls:
                calls = ", ".join(
                    f"{call.name}({json.dumps(call.arguments, ensure_ascii=False)[:200]})"
                    for call in msg.tool_calls
                )
                content = f"{content} -> calls {calls}".strip()
            lines.append(f"{label}: {content}")

        # Drop from the oldest side; the first user message is the task and stays.
        consumed = sum(len(line) + 1 for line in lines)
        dropped = 0
        while consumed > max_total_chars and len(lines) > 2:
            removed = lines.pop(1)
            consumed -= len(removed) + 1
            dropped += 1
        if dropped:
            lines.insert(1, f"[... {dropped} older messages omitted ...]")
        return "\n".join(lines)

    @staticmethod
    def _keep_recent_third(messages: list[Message]) -> list[Message]:
        keep = max(1, math.ceil(len(messages) / 3))
        tail = list(messages[-keep:])
        while tail and tail[0].role == "tool":
            tail.pop(0)
        if not tail:
            users = [msg for msg in messages if msg.role == "user"]
            tail = users[-1:]
        return tail

    async def compact(self, conversation: Conversation) -> bool:
        """Replace the history with a compaction notice and a model-written summary.

        The full history is backed up first. On failure the backup is restored;
        without one only the most recent third of the messages is kept.
        """
        original = list(conversation.messages)
        if not original:
            return False

        backed_up = False
        if self.store is not None:
            cwd = self.supervisor.cwd if self.supervisor is not None else Path.cwd()
            try:
                backed_up = await self.store.backup(
                    original,
                    model=conversation.model,
                    cwd=str(cwd),
                )
            except Exception as e:
                log.debug("Compaction backup failed", error=str(e))

        max_chars = min(self.summary_max_chars, max(2000, conversation.max_tokens * 2))
        prompt = self.instructions.render(
            COMPACTION_USER_PROMPT,
            environment=self._environment_facts(),
            formatted=self._format_compaction_messages(original, max_total_chars=max_chars),
        )
        summary = ""
        error = ""
        try:
            response = await self.provider.invoke(
                [Message(role="user", content=prompt)],
                tools=None,
                system_prompt=self.instructions.load(COMPACTION_SYSTEM_PROMPT),
                max_tokens=self.summary_max_tokens,
            )
            if response.kind == "text":
                summary = response.content.strip()
            error = response.error or ("empty summary" if not summary else "")
        except Exception as e:
            error = str(e)

        if summary:
            conversation.replace([
                Message(role="user", content=self.instructions.load(COMPACTION_NOTICE)),
                Message(role="assistant", content=summary),
            ])
            log.info("Conversation compacted", messages_before=len(original))
            return True

        log.warning("Compaction summary failed", error=error)
        restored: list[Message] = []
        if backed_up and self.store is not None:
            try:
                snapshot = await self.store.restore_backup()
                if snapshot is not None:
                    restored = snapshot.history
            except Exception as e:
                log.debug("Backup restore failed", error=str(e))
        if restored:
            conversation.replace(restored)
        else:
            conversation.replace(self._keep_recent_third(original))
        return False

