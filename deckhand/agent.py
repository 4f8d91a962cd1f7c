"""Agent loop: model calls interleaved with permission-gated tool execution."""

import asyncio
import json
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable

from deckhand.context import ContextBudgetManager
from deckhand.conversation import Conversation
from deckhand.exceptions import DeckhandError, ToolError
from deckhand.instructions import InstructionLoader
from deckhand.llm import LLMProvider, Message, ToolCall
from deckhand.logging import get_logger
from deckhand.permissions import PermissionDecision, PermissionGate
from deckhand.process_supervisor import ProcessSupervisor
from deckhand.tools import ToolRegistry

if TYPE_CHECKING:
    from deckhand.session import SessionStore, SessionSnapshot

log = get_logger(__name__)

MAX_DEPTH = 15
DEPTH_LIMIT_NOTICE = "Tool call depth limit reached."
CANCELLED_NOTICE = "Cancelled by user."
SHORT_HISTORY_MESSAGES = 3


@dataclass
class TurnResult:
    """How a turn ended: completed, error, cancelled or depth_limit."""

    status: str
    text: str = ""
    error: str = ""
    depth: int = 0


class Agent:
    """Drives one user turn at a time against an injected set of collaborators."""

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolRegistry,
        budget: ContextBudgetManager,
        permissions: PermissionGate,
        supervisor: ProcessSupervisor,
        session_store: "SessionStore | None" = None,
        instructions: InstructionLoader | None = None,
        conversation: Conversation | None = None,
        max_depth: int = MAX_DEPTH,
        transcript_save_limit: int = 100,
        status_callback: Callable[[str], None] | None = None,
        notice_callback: Callable[[str], None] | None = None,
        tool_output_callback: Callable[[str, dict[str, Any], str], None] | None = None,
        usage_callback: Callable[[dict[str, int]], None] | None = None,
    ):
        """Initialize the agent.

        Args:
            provider: Chat backend
            tools: Tool catalogue exposed to the model
            budget: Context budget manager for the conversation
            permissions: Approval gate for dangerous tools
            supervisor: Process supervisor owning the working directory
            session_store: Optional best-effort persistence
            status_callback: Runtime status updates ("thinking", "running tool")
            notice_callback: Turn-level notices (errors, cancellation, depth limit)
            tool_output_callback: Raw tool output for display
            usage_callback: Context usage after each tool result
        """
        self.provider = provider
        self.tools = tools
        self.budget = budget
        self.permissions = permissions
        self.supervisor = supervisor
        self.session_store = session_store
        self.instructions = instructions or InstructionLoader()
        self.conversation = conversation or Conversation(model=provider.model)
        self.transcript: list[Message] = []
        self.max_depth = max_depth
        self.transcript_save_limit = transcript_save_limit
        self.status_callback = status_callback
        self.notice_callback = notice_callback
        self.tool_output_callback = tool_output_callback
        self.usage_callback = usage_callback
        self.last_usage: dict[str, int] = self._empty_usage()
        self.total_usage: dict[str, int] = self._empty_usage()

    @staticmethod
    def _empty_usage() -> dict[str, int]:
        return {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
        }

    @staticmethod
    def _accumulate_usage(target: dict[str, int], usage: dict[str, int] | None) -> None:
        """Add usage values into target totals."""
        if not usage:
            return
        prompt = int(usage.get("prompt_tokens", 0))
        completion = int(usage.get("completion_tokens", 0))
        target["prompt_tokens"] += prompt
        target["completion_tokens"] += completion
        target["total_tokens"] += int(usage.get("total_tokens", prompt + completion))

    def _set_runtime_status(self, status: str) -> None:
        if self.status_callback:
            try:
                self.status_callback(status)
            except Exception:
                pass

    def _emit_tool_output(self, tool_name: str, arguments: dict[str, Any], output: str) -> None:
        if not self.tool_output_callback:
            return
        try:
            self.tool_output_callback(tool_name, arguments, output)
        except Exception:
            pass

    def _emit_usage(self, conversation: Conversation, reserved_tokens: int) -> None:
        if not self.usage_callback:
            return
        try:
            self.usage_callback(self.budget.context_usage(conversation, reserved_tokens))
        except Exception:
            pass

    def _notice(self, conversation: Conversation, text: str, to_conversation: bool) -> None:
        """Record a system notice in the transcript and optionally the conversation."""
        notice = Message(role="system", content=text)
        self.transcript.append(notice)
        if to_conversation:
            conversation.append(Message(role="system", content=text))
        if self.notice_callback:
            try:
                self.notice_callback(text)
            except Exception:
                pass

    def _record(self, conversation: Conversation, message: Message) -> None:
        # Budget passes rewrite conversation messages in place; the transcript keeps the original.
        conversation.append(message)
        self.transcript.append(replace(message))

    def system_prompt(self) -> str:
        return self.instructions.system_prompt(self.supervisor.cwd)

    def _reserved_tokens(self, system_prompt: str, tool_definitions: list[dict[str, Any]]) -> int:
        """Tokens taken by the system prompt and tool schema on every request."""
        return self.budget.count_tokens(system_prompt) + self.budget.count_tokens(
            json.dumps(tool_definitions, ensure_ascii=False)
        )

    def context_usage(self, conversation: Conversation | None = None) -> dict[str, int]:
        conv = conversation or self.conversation
        reserved = self._reserved_tokens(self.system_prompt(), self.tools.get_definitions())
        return self.budget.context_usage(conv, reserved)

    async def save_session(self, conversation: Conversation | None = None) -> None:
        """Persist conversation and transcript; failures are logged and ignored."""
        if self.session_store is None:
            return
        conv = conversation or self.conversation
        try:
            await self.session_store.save(
                conv.messages,
                self.transcript[-self.transcript_save_limit:],
                conv.model,
                str(self.supervisor.cwd),
            )
        except Exception as e:
            log.debug("Session save failed", error=str(e))

    async def _recover_short_history(self, conversation: Conversation) -> None:
        """Restore the backup when an error leaves a suspiciously short history."""
        if self.session_store is None or len(conversation.messages) > SHORT_HISTORY_MESSAGES:
            return
        try:
            snapshot = await self.session_store.restore_backup()
        except Exception as e:
            log.debug("Backup lookup failed", error=str(e))
            return
        if snapshot is None or len(snapshot.history) <= len(conversation.messages):
            return
        conversation.replace(snapshot.history)
        log.info("Conversation restored from backup", messages=len(snapshot.history))
        self._notice(
            conversation,
            f"Restored {len(snapshot.history)} messages from the last backup.",
            to_conversation=False,
        )

    @staticmethod
    def _is_cancelled(cancel_event: asyncio.Event | None) -> bool:
        return cancel_event is not None and cancel_event.is_set()

    def _cancel(self, conversation: Conversation, depth: int) -> TurnResult:
        log.info("Turn cancelled", depth=depth)
        self._notice(conversation, CANCELLED_NOTICE, to_conversation=True)
        return TurnResult(status="cancelled", depth=depth)

    async def _request_permission(
        self,
        call: ToolCall,
        cancel_event: asyncio.Event | None,
    ) -> bool | None:
        """Ask the gate; None when the turn was cancelled while waiting."""
        if cancel_event is None or not self.permissions.requires_approval(call.name):
            return await self.permissions.check(call.name, call.arguments)

        check_task = asyncio.create_task(self.permissions.check(call.name, call.arguments))
        cancel_task = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {check_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if check_task in done:
                return check_task.result()
            self.permissions.resolve(PermissionDecision.DENY)
            check_task.cancel()
            await asyncio.gather(check_task, return_exceptions=True)
            return None
        finally:
            if not cancel_task.done():
                cancel_task.cancel()
                await asyncio.gather(cancel_task, return_exceptions=True)

    async def _execute_tool(self, call: ToolCall) -> str:
        """Run one approved tool call; every failure becomes result text."""
        try:
            result = await self.tools.execute(call.name, call.arguments, cwd=self.supervisor.cwd)
        except ToolError as e:
            return f"Error: {e}"
        except Exception as e:
            log.error("Unexpected tool failure", tool=call.name, error=str(e))
            return f"Error executing {call.name}: {e}"
        return result.to_text()

    async def run_turn(
        self,
        conversation: Conversation | None = None,
        depth: int = 0,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        """Call the model until it answers with text, fails, hits the depth limit or is cancelled."""
        conv = conversation or self.conversation
        capacity_retried = False
        tool_definitions = self.tools.get_definitions()

        while True:
            if depth >= self.max_depth:
                log.warning("Tool call depth limit reached", depth=depth)
                self._notice(conv, DEPTH_LIMIT_NOTICE, to_conversation=True)
                return TurnResult(status="depth_limit", depth=depth)

            system_prompt = self.system_prompt()
            reserved = self._reserved_tokens(system_prompt, tool_definitions)
            await self.budget.ensure_fits(conv, reserved_tokens=reserved)

            if self._is_cancelled(cancel_event):
                return self._cancel(conv, depth)

            self._set_runtime_status("thinking")
            response = await self.provider.invoke(
                conv.messages,
                tools=tool_definitions,
                system_prompt=system_prompt,
                abort_event=cancel_event,
            )
            self.last_usage = self._empty_usage()
            self._accumulate_usage(self.last_usage, response.usage)
            self._accumulate_usage(self.total_usage, response.usage)

            if response.cancelled:
                return self._cancel(conv, depth)

            if response.kind == "error":
                capacity_error = self.provider.is_capacity_error(response)
                if capacity_error and not capacity_retried:
                    capacity_retried = True
                    log.info("Request too large, compacting before retry", depth=depth)
                    self._set_runtime_status("compacting")
                    await self.budget.compact(conv)
                    depth += 1
                    continue
                if not capacity_error:
                    await self._recover_short_history(conv)
                self._notice(conv, f"Error: {response.error}", to_conversation=False)
                return TurnResult(status="error", error=response.error, depth=depth)

            if response.kind == "tool_calls" and response.tool_calls:
                self._record(
                    conv,
                    Message(
                        role="assistant",
                        content=response.content,
                        tool_calls=list(response.tool_calls),
                    ),
                )
                for call in response.tool_calls:
                    if self._is_cancelled(cancel_event):
                        return self._cancel(conv, depth)
                    try:
                        approved = await self._request_permission(call, cancel_event)
                    except DeckhandError as e:
                        approved = False
                        log.warning("Permission check failed", tool=call.name, error=str(e))
                    if approved is None:
                        return self._cancel(conv, depth)

                    if approved:
                        self._set_runtime_status(f"running {call.name}")
                        output = await self._execute_tool(call)
                    else:
                        output = f"Permission denied by user for {call.name}"

                    self._record(
                        conv,
                        Message(
                            role="tool",
                            content=output,
                            tool_call_id=call.id,
                            tool_name=call.name,
                        ),
                    )
                    self._emit_tool_output(call.name, call.arguments, output)
                    self._emit_usage(conv, reserved)
                depth += 1
                continue

            text = response.content or ""
            self._record(conv, Message(role="assistant", content=text))
            self._set_runtime_status("idle")
            await self.save_session(conv)
            return TurnResult(status="completed", text=text, depth=depth)

    async def complete(self, user_input: str, cancel_event: asyncio.Event | None = None) -> TurnResult:
        """Append the user's message and run a turn."""
        self._record(self.conversation, Message(role="user", content=user_input))
        return await self.run_turn(self.conversation, cancel_event=cancel_event)

    def reset(self) -> None:
        """Forget the conversation and transcript."""
        self.conversation.clear()
        self.transcript.clear()

    def restore(self, snapshot: "SessionSnapshot") -> None:
        """Replace the conversation with a stored snapshot."""
        self.conversation.replace(snapshot.history)
        self.transcript = list(snapshot.display)

    def set_provider(self, provider: LLMProvider, max_tokens: int | None = None) -> None:
        """Switch backend/model; the conversation keeps its history."""
        self.provider = provider
        self.budget.provider = provider
        self.conversation.model = provider.model
        if max_tokens:
            self.conversation.max_tokens = max_tokens
