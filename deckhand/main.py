"""Main entry point for Deckhand."""

import asyncio
import signal
import sys
from pathlib import Path

import typer

from deckhand import __version__
from deckhand.agent import Agent, TurnResult
from deckhand.cli import TerminalUI
from deckhand.commands import CommandDispatcher
from deckhand.config import Config, get_config, set_config
from deckhand.context import ContextBudgetManager, resolve_context_ceiling
from deckhand.conversation import Conversation
from deckhand.exceptions import ConfigurationError
from deckhand.instructions import InstructionLoader
from deckhand.llm import OpenAICompatibleProvider, create_provider
from deckhand.logging import configure_logging, log
from deckhand.permissions import PermissionGate, PermissionRequest
from deckhand.process_supervisor import ProcessSupervisor
from deckhand.session import SessionStore
from deckhand.tools import build_registry

app = typer.Typer(help="Deckhand - a terminal coding agent")

_RESUME_PREVIEW_MESSAGES = 6


async def build_agent(
    cfg: Config,
    ui: TerminalUI,
    cwd: Path | None = None,
    store: SessionStore | None = None,
) -> Agent:
    """Wire provider, tools, budget, gate and supervisor into an agent."""
    supervisor = ProcessSupervisor.from_config(cfg, cwd=cwd or Path.cwd())
    provider = create_provider(
        provider=cfg.model.provider,
        model=cfg.model.model,
        api_key=cfg.model.api_key or None,
        base_url=cfg.model.base_url or None,
        temperature=cfg.model.temperature,
        max_tokens=cfg.model.max_tokens,
    )

    tpm_limit = cfg.model.tpm_limit
    if tpm_limit is None and isinstance(provider, OpenAICompatibleProvider) and provider.api_key:
        tpm_limit = await provider.probe_rate_limit()
        if tpm_limit:
            log.info("Detected tokens-per-minute limit", tpm=tpm_limit)
            cfg.model.tpm_limit = tpm_limit
    ceiling = resolve_context_ceiling(
        provider.model,
        cfg.model,
        tpm_limit=tpm_limit,
        default=cfg.context.default_context_window,
    )

    instructions = InstructionLoader()
    gate = PermissionGate(cfg.tools.dangerous)

    async def on_permission_request(request: PermissionRequest) -> None:
        decision = await ui.ask_permission_async(request.tool_name, request.arguments)
        gate.resolve(decision)

    gate.on_request = on_permission_request

    return Agent(
        provider=provider,
        tools=build_registry(supervisor, cfg),
        budget=ContextBudgetManager.from_config(cfg, provider, store, supervisor, instructions),
        permissions=gate,
        supervisor=supervisor,
        session_store=store,
        instructions=instructions,
        conversation=Conversation(model=provider.model, max_tokens=ceiling),
        max_depth=cfg.agent.max_depth,
        transcript_save_limit=cfg.agent.transcript_save_limit,
        status_callback=ui.set_runtime_status,
        notice_callback=ui.print_notice,
        tool_output_callback=lambda name, _args, output: ui.print_tool_result(name, output),
        usage_callback=ui.print_usage,
    )


async def _run_cancellable_turn(agent: Agent, user_input: str) -> TurnResult:
    """Run one turn; Ctrl+C sets the turn's cancel event instead of killing the app."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    handler_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        pass
    try:
        return await agent.complete(user_input, cancel_event=cancel_event)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _offer_resume(ui: TerminalUI, agent: Agent, store: SessionStore, cfg: Config, resume: bool | None) -> None:
    if resume is False:
        return
    if not await store.has_recent_session(cfg.session.resume_window_seconds):
        return
    if resume is None and not await asyncio.to_thread(ui.confirm, "Resume your previous session?"):
        return
    try:
        snapshot = await store.load()
    except Exception as e:
        log.debug("Session load failed", error=str(e))
        return
    if snapshot is None:
        return

    agent.restore(snapshot)
    saved_cwd = Path(snapshot.cwd) if snapshot.cwd else None
    if saved_cwd is not None and saved_cwd.is_dir():
        agent.supervisor.cwd = saved_cwd.resolve()
    for message in snapshot.display[-_RESUME_PREVIEW_MESSAGES:]:
        ui.print_message(message.role, message.content)
    ui.print_success(f"Resumed session with {len(snapshot.history)} messages.")


async def run_interactive(resume: bool | None = None) -> None:
    """Interactive loop: read a line, run a command or a turn, repeat."""
    cfg = get_config()
    ui = TerminalUI()
    store = SessionStore(cfg.session.path)
    agent = await build_agent(cfg, ui, store=store)
    dispatcher = CommandDispatcher(agent, cfg, store)

    ui.print_welcome(agent.provider.name, agent.provider.model, agent.supervisor.cwd)
    await _offer_resume(ui, agent, store, cfg, resume)

    try:
        while True:
            await ui.dismiss_stale_prompt()
            try:
                user_input = await asyncio.to_thread(ui.prompt)
            except (KeyboardInterrupt, EOFError):
                break
            if not user_input.strip():
                continue

            outcome = await dispatcher.handle(user_input)
            if outcome is not None:
                if outcome.level == "error":
                    ui.print_error(outcome.message)
                elif outcome.level == "success":
                    ui.print_success(outcome.message)
                else:
                    ui.print_info(outcome.message)
                if outcome.exit:
                    break
                continue

            try:
                result = await _run_cancellable_turn(agent, user_input)
            except Exception as e:
                ui.print_error(str(e))
                log.error("Turn failed", error=str(e))
                continue
            if result.status == "completed":
                ui.print_message("assistant", result.text)
    finally:
        await agent.supervisor.shutdown()
        await agent.provider.close()
        if agent.tools.has_tool("fetch_url"):
            await agent.tools.get("fetch_url").close()
        await store.close()


def main(
    config: str = "",
    model: str = "",
    provider: str = "",
    verbose: bool = False,
    resume: bool | None = None,
) -> None:
    """Start a Deckhand interactive session."""
    try:
        if config:
            cfg = Config.from_yaml(Path(config))
            cfg.apply_env_api_key()
        else:
            cfg = Config.load()
    except ConfigurationError as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        raise typer.Exit(code=1)

    if provider:
        cfg.model.provider = provider.strip().lower()
        cfg.model.api_key = ""
        cfg.apply_env_api_key()
    if model:
        cfg.model.model = model

    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)

    try:
        asyncio.run(run_interactive(resume=resume))
    except KeyboardInterrupt:
        log.info("Shutting down...")
    except Exception as e:
        log.error("Fatal error", error=str(e))
        sys.exit(1)


@app.command()
def run(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
    resume: bool | None = typer.Option(None, "--resume/--no-resume", help="Resume the last session"),
) -> None:
    main(config, model, provider, verbose, resume)


@app.command()
def version() -> None:
    """Show version information."""
    print(f"Deckhand v{__version__}")


if __name__ == "__main__":
    app()
