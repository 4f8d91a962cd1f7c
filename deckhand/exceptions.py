"""Custom exceptions for Deckhand."""


class DeckhandError(Exception):
    """Base exception for Deckhand."""

    pass


class ConfigurationError(DeckhandError):
    """Configuration-related errors."""

    pass


class LLMError(DeckhandError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, payload too large, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(DeckhandError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolBlockedError(ToolError):
    """Tool execution blocked by policy."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Tool '{tool_name}' blocked: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class SessionError(DeckhandError):
    """Session persistence errors."""

    pass


class PermissionPendingError(DeckhandError):
    """A permission request was issued while another one is unresolved."""

    def __init__(self, pending_tool: str, requested_tool: str):
        super().__init__(
            f"Permission request for '{requested_tool}' issued while "
            f"'{pending_tool}' is still pending"
        )
        self.pending_tool = pending_tool
        self.requested_tool = requested_tool
