"""Slash commands typed by the operator between turns."""

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from deckhand.config import PROVIDER_API_KEY_ENV, Config
from deckhand.context import resolve_context_ceiling
from deckhand.llm import PROVIDER_BASE_URLS, LLMProvider, create_provider
from deckhand.logging import get_logger
from deckhand.tools.process import format_process_list

if TYPE_CHECKING:
    from deckhand.agent import Agent
    from deckhand.session import SessionStore

log = get_logger(__name__)

HELP_TEXT = """Commands:
  /clear            - Clear conversation history and the saved session
  /restore          - Restore the conversation from the last backup
  /model [id]       - Show or switch the model
  /provider [name]  - Show or switch the provider
  /processes        - List background processes
  /help             - Show this help message
  /exit, /quit      - Exit (stops background processes)

Anything else is sent to the agent."""

SUPPORTED_PROVIDERS = (*PROVIDER_BASE_URLS, "ollama")


@dataclass
class CommandOutcome:
    message: str = ""
    level: str = "info"  # "info", "success", "error"
    exit: bool = False


ProviderFactory = Callable[..., LLMProvider]


class CommandDispatcher:
    """Maps ``/command`` lines onto direct changes to the agent's state."""

    def __init__(
        self,
        agent: "Agent",
        config: Config,
        store: "SessionStore | None" = None,
        provider_factory: ProviderFactory = create_provider,
    ):
        self.agent = agent
        self.config = config
        self.store = store
        self.provider_factory = provider_factory

    @staticmethod
    def is_command(text: str) -> bool:
        return str(text or "").strip().startswith("/")

    async def handle(self, text: str) -> CommandOutcome | None:
        """Run a slash command; None when ``text`` is not a command."""
        cmd = str(text or "").strip()
        if not cmd.startswith("/"):
            return None

        parts = cmd.split(None, 1)
        command = parts[0].lower()
        args = parts[1].strip() if len(parts) > 1 else ""

        if command in ("/help", "/h", "/?"):
            return CommandOutcome(HELP_TEXT)
        if command == "/clear":
            return await self._clear()
        if command == "/restore":
            return await self._restore()
        if command == "/model":
            return await self._model(args)
        if command == "/provider":
            return await self._provider(args)
        if command in ("/processes", "/ps"):
            return CommandOutcome(format_process_list(self.agent.supervisor.list()))
        if command in ("/exit", "/quit", "/q"):
            return CommandOutcome("Goodbye.", exit=True)
        return CommandOutcome(f"Unknown command: {command}. Type /help for commands.", level="error")

    async def _clear(self) -> CommandOutcome:
        self.agent.reset()
        if self.store is not None:
            try:
                await self.store.clear()
            except Exception as e:
                log.debug("Session clear failed", error=str(e))
        return CommandOutcome("Conversation cleared.", level="success")

    async def _restore(self) -> CommandOutcome:
        if self.store is None:
            return CommandOutcome("Session storage is disabled.", level="error")
        try:
            snapshot = await self.store.restore_backup()
        except Exception as e:
            log.debug("Backup restore failed", error=str(e))
            snapshot = None
        if snapshot is None or not snapshot.history:
            return CommandOutcome("No backup available.", level="error")
        self.agent.restore(snapshot)
        await self.agent.save_session()
        return CommandOutcome(
            f"Restored {len(snapshot.history)} messages from backup.",
            level="success",
        )

    def _api_key_for(self, provider: str) -> str:
        if provider == self.config.model.provider and self.config.model.api_key:
            return self.config.model.api_key
        env_name = PROVIDER_API_KEY_ENV.get(provider)
        return os.environ.get(env_name, "") if env_name else ""

    async def _switch(self, provider: str, model: str, base_url: str = "") -> CommandOutcome:
        if not base_url and provider == self.config.model.provider:
            base_url = self.config.model.base_url
        try:
            new_provider = self.provider_factory(
                provider=provider,
                model=model,
                api_key=self._api_key_for(provider) or None,
                base_url=base_url or None,
                temperature=self.config.model.temperature,
                max_tokens=self.config.model.max_tokens,
            )
        except ValueError as e:
            return CommandOutcome(str(e), level="error")

        old_provider = self.agent.provider
        ceiling = resolve_context_ceiling(
            model,
            self.config.model,
            default=self.config.context.default_context_window,
        )
        self.agent.set_provider(new_provider, max_tokens=ceiling)
        if old_provider is not new_provider:
            try:
                await old_provider.close()
            except Exception as e:
                log.debug("Closing previous provider failed", error=str(e))
        log.info("Model switched", provider=provider, model=model, ceiling=ceiling)
        return CommandOutcome(
            f"Using {provider}/{model} (context ceiling {ceiling:,} tokens).",
            level="success",
        )

    async def _model(self, selector: str) -> CommandOutcome:
        current = self.agent.provider
        if not selector:
            lines = [f"Current model: {current.name}/{current.model}"]
            if self.config.model.allowed:
                lines.append("Allowed models:")
                lines.extend(
                    f"  {entry.id}: {entry.provider}/{entry.model}"
                    for entry in self.config.model.allowed
                )
            return CommandOutcome("\n".join(lines))

        entry = self.config.find_allowed_model(selector)
        if entry is not None:
            return await self._switch(entry.provider.strip().lower(), entry.model, entry.base_url)
        return await self._switch(current.name, selector)

    async def _provider(self, name: str) -> CommandOutcome:
        current = self.agent.provider
        if not name:
            return CommandOutcome(
                f"Current provider: {current.name}\nAvailable: {', '.join(SUPPORTED_PROVIDERS)}"
            )
        provider = name.strip().lower()
        if provider not in SUPPORTED_PROVIDERS:
            return CommandOutcome(
                f"Unknown provider: {name}. Available: {', '.join(SUPPORTED_PROVIDERS)}",
                level="error",
            )
        return await self._switch(provider, current.model)
