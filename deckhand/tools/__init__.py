"""Tools package for Deckhand."""

from deckhand.config import Config, get_config
from deckhand.process_supervisor import ProcessSupervisor
from deckhand.tools.registry import Tool, ToolRegistry, ToolResult
from deckhand.tools.files import ListDirTool, ReadFileTool, WriteFileTool
from deckhand.tools.fetch_url import FetchUrlTool
from deckhand.tools.process import (
    GetLogsTool,
    ListProcessesTool,
    RunCommandTool,
    SendInputTool,
    StopProcessTool,
)


def build_registry(supervisor: ProcessSupervisor, config: Config | None = None) -> ToolRegistry:
    """Registry with the full tool catalogue wired to one supervisor."""
    cfg = config or get_config()
    registry = ToolRegistry(blocked_commands=cfg.tools.blocked_commands)
    registry.register(ReadFileTool(max_bytes=cfg.tools.read_max_bytes))
    registry.register(WriteFileTool())
    registry.register(ListDirTool())
    registry.register(RunCommandTool(supervisor))
    registry.register(StopProcessTool(supervisor))
    registry.register(ListProcessesTool(supervisor))
    registry.register(GetLogsTool(supervisor))
    registry.register(SendInputTool(supervisor))
    registry.register(
        FetchUrlTool(max_chars=cfg.tools.fetch_max_chars, timeout=cfg.tools.fetch_timeout)
    )
    return registry


__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "build_registry",
    "ReadFileTool",
    "WriteFileTool",
    "ListDirTool",
    "RunCommandTool",
    "StopProcessTool",
    "ListProcessesTool",
    "GetLogsTool",
    "SendInputTool",
    "FetchUrlTool",
]
