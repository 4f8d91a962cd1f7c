"""Chat providers: OpenAI-compatible HTTP backends and native Ollama."""

import asyncio
import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from deckhand.exceptions import LLMAPIError, LLMError
from deckhand.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"

PROVIDER_BASE_URLS = {
    "groq": "https://api.groq.com/openai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "openai": "https://api.openai.com/v1",
}

CANCELLED_MESSAGE = "Request cancelled by user."


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        arguments = data.get("arguments", {})
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            arguments=arguments if isinstance(arguments, dict) else {},
        )


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_name:
            data["tool_name"] = self.tool_name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create from dictionary."""
        raw_calls = data.get("tool_calls")
        tool_calls = None
        if isinstance(raw_calls, list) and raw_calls:
            tool_calls = [ToolCall.from_dict(item) for item in raw_calls if isinstance(item, dict)]
        return cls(
            role=str(data.get("role", "user")),
            content=str(data.get("content") or ""),
            tool_calls=tool_calls or None,
            tool_call_id=data.get("tool_call_id"),
            tool_name=data.get("tool_name"),
        )


@dataclass
class LLMResponse:
    """Result of one provider call: text, tool calls, or an error."""

    kind: str  # "text", "tool_calls", "error"
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    error: str = ""
    status_code: int | None = None
    cancelled: bool = False
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)

    @classmethod
    def text(cls, content: str, **kwargs: Any) -> "LLMResponse":
        return cls(kind="text", content=content, **kwargs)

    @classmethod
    def calls(cls, tool_calls: list[ToolCall], content: str = "", **kwargs: Any) -> "LLMResponse":
        return cls(kind="tool_calls", content=content, tool_calls=list(tool_calls), **kwargs)

    @classmethod
    def failure(
        cls,
        error: str,
        status_code: int | None = None,
        cancelled: bool = False,
    ) -> "LLMResponse":
        return cls(kind="error", error=error, status_code=status_code, cancelled=cancelled)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


def estimate_tokens(text: str) -> int:
    """Approximate tokens from a string (~4 chars = 1 token)."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        pass


def _tool_context_message(msg: Message) -> Message:
    """Keep an unmatched tool payload as plain assistant context."""
    tool_name = (msg.tool_name or "").strip() or "tool"
    return Message(role="assistant", content=f"[tool_context:{tool_name}] {msg.content}".strip())


def normalize_tool_message_order(messages: list[Message]) -> list[Message]:
    """Pair every tool call with its result for backends that enforce ordering.

    Calls without a following result (pruned or never executed) are dropped from
    the assistant message; results without a matching call are folded into
    assistant context.
    """
    normalized: list[Message] = []
    idx = 0
    total = len(messages)
    while idx < total:
        msg = messages[idx]
        if msg.role == "assistant" and msg.tool_calls:
            end = idx + 1
            while end < total and messages[end].role == "tool":
                end += 1
            results = messages[idx + 1:end]
            call_ids = {call.id for call in msg.tool_calls}
            answered = [res for res in results if res.tool_call_id in call_ids]
            answered_ids = {res.tool_call_id for res in answered}
            kept_calls = [call for call in msg.tool_calls if call.id in answered_ids]
            normalized.append(replace(msg, tool_calls=kept_calls or None))
            normalized.extend(answered)
            normalized.extend(
                _tool_context_message(res) for res in results if res.tool_call_id not in call_ids
            )
            idx = end
            continue
        if msg.role == "tool":
            normalized.append(_tool_context_message(msg))
        else:
            normalized.append(msg)
        idx += 1
    return normalized


def _tool_definition_fields(tool: ToolDefinition | dict[str, Any]) -> tuple[str, str, dict[str, Any]]:
    """Read name/description/parameters from a definition object or dict."""
    if isinstance(tool, dict):
        return (
            str(tool.get("name") or ""),
            str(tool.get("description") or ""),
            tool.get("parameters") or {},
        )
    return tool.name, tool.description or "", tool.parameters or {}


class LLMProvider(ABC):
    """Abstract base class for chat providers.

    Subclasses implement ``complete`` and raise ``LLMError`` on failure. The
    loop talks to ``invoke``, which never raises for backend failures: errors
    come back as ``LLMResponse`` values of kind ``"error"``.
    """

    name: str = "provider"
    model: str = ""
    # Lower-cased substrings that mark a request as too large for the backend.
    capacity_error_markers: tuple[str, ...] = (
        "413",
        "request too large",
        "payload too large",
        "context_length_exceeded",
        "maximum context length",
        "prompt is too long",
        "reduce the length of the messages",
        "tokens per minute",
    )

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition | dict[str, Any]] | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    async def invoke(
        self,
        messages: list[Message],
        tools: list[ToolDefinition | dict[str, Any]] | None = None,
        system_prompt: str | None = None,
        abort_event: asyncio.Event | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Run ``complete`` and abandon the request when ``abort_event`` fires."""
        if abort_event is not None and abort_event.is_set():
            return LLMResponse.failure(CANCELLED_MESSAGE, cancelled=True)

        request_task = asyncio.create_task(
            self.complete(
                messages,
                tools=tools,
                system_prompt=system_prompt,
                max_tokens=max_tokens,
            )
        )
        abort_wait_task: asyncio.Task[bool] | None = None
        if abort_event is not None:
            abort_wait_task = asyncio.create_task(abort_event.wait())
        try:
            wait_tasks: set[asyncio.Task[Any]] = {request_task}
            if abort_wait_task is not None:
                wait_tasks.add(abort_wait_task)
            done, _ = await asyncio.wait(wait_tasks, return_when=asyncio.FIRST_COMPLETED)

            if request_task not in done:
                await _cancel_task(request_task)
                log.info("Provider request cancelled", provider=self.name)
                return LLMResponse.failure(CANCELLED_MESSAGE, cancelled=True)
            return request_task.result()
        except asyncio.CancelledError:
            await _cancel_task(request_task)
            raise
        except LLMAPIError as e:
            log.warning("Provider API error", provider=self.name, status=e.status_code, error=str(e))
            return LLMResponse.failure(str(e), status_code=e.status_code)
        except Exception as e:
            log.warning("Provider call failed", provider=self.name, error=str(e))
            return LLMResponse.failure(str(e))
        finally:
            await _cancel_task(abort_wait_task)

    def is_capacity_error(self, response: LLMResponse | str) -> bool:
        """Whether an error means the conversation is too large for the backend."""
        if isinstance(response, LLMResponse):
            if response.cancelled:
                return False
            if response.status_code == 413:
                return True
            text = response.error
        else:
            text = response
        lowered = str(text or "").lower()
        return any(marker in lowered for marker in self.capacity_error_markers)

    def count_tokens(self, text: str) -> int:
        """Count tokens (rough estimate, ~4 characters per token)."""
        return estimate_tokens(text)

    async def close(self) -> None:
        """Release network resources."""
        return None


class OpenAICompatibleProvider(LLMProvider):
    """Chat-completions provider for Groq, OpenRouter, OpenAI and compatibles."""

    def __init__(
        self,
        provider: str = "groq",
        model: str = "qwen-2.5-coder-32b",
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 8192,
        timeout: float = 120.0,
    ):
        """Initialize an OpenAI-compatible provider.

        Args:
            provider: Provider name, used for the default base URL and logging
            model: Model identifier as the backend knows it
            api_key: Bearer token
            base_url: Override for the API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            timeout: HTTP timeout in seconds
        """
        self.name = provider
        self.model = model
        self.api_key = api_key
        self.base_url = (base_url or PROVIDER_BASE_URLS.get(provider, "")).rstrip("/")
        if not self.base_url:
            raise ValueError(f"No base URL known for provider '{provider}'")
        self.temperature = temperature
        self.max_tokens = max_tokens

        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _convert_messages(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
    ) -> list[dict[str, Any]]:
        """Convert messages to chat-completions format."""
        result: list[dict[str, Any]] = []
        if system_prompt:
            result.append({"role": "system", "content": system_prompt})

        for msg in normalize_tool_message_order(messages):
            if msg.role == "tool":
                result.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content,
                })
            elif msg.role == "assistant":
                entry: dict[str, Any] = {"role": "assistant", "content": msg.content or None}
                if msg.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments, ensure_ascii=True),
                            },
                        }
                        for call in msg.tool_calls
                    ]
                elif not msg.content:
                    entry["content"] = ""
                result.append(entry)
            else:
                result.append({"role": msg.role, "content": msg.content})
        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition | dict[str, Any]]) -> list[dict[str, Any]]:
        """Convert tools to chat-completions format."""
        result = []
        for tool in tools:
            name, description, parameters = _tool_definition_fields(tool)
            if name:
                result.append({
                    "type": "function",
                    "function": {
                        "name": name,
                        "description": description,
                        "parameters": parameters,
                    },
                })
        return result

    @staticmethod
    def _parse_tool_calls(raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for idx, raw in enumerate(raw_calls, start=1):
            function = raw.get("function") or {}
            name = str(function.get("name", "")).strip()
            if not name:
                continue
            raw_args = function.get("arguments", {})
            if isinstance(raw_args, str):
                try:
                    arguments = json.loads(raw_args) if raw_args.strip() else {}
                except json.JSONDecodeError:
                    arguments = {"raw": raw_args}
            else:
                arguments = raw_args if isinstance(raw_args, dict) else {}
            if not isinstance(arguments, dict):
                arguments = {"raw": arguments}
            calls.append(ToolCall(
                id=str(raw.get("id") or f"call_{idx}"),
                name=name,
                arguments=arguments,
            ))
        return calls

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition | dict[str, Any]] | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/chat/completions"
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages, system_prompt),
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
        }
        converted_tools = self._convert_tools(tools) if tools else []
        if converted_tools:
            body["tools"] = converted_tools
            body["tool_choice"] = "auto"

        try:
            log.debug("Calling provider", provider=self.name, model=self.model, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise LLMAPIError(f"{self.name} HTTP error: {e}")

        if not response.is_success:
            raise LLMAPIError(
                f"{self.name} API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMError(f"{self.name} response decode error: {e}")

        choices = data.get("choices") or []
        if not choices:
            raise LLMError(f"{self.name} returned no choices")
        message = choices[0].get("message") or {}
        content = message.get("content") or ""
        raw_usage = data.get("usage") or {}
        usage = {
            "prompt_tokens": int(raw_usage.get("prompt_tokens", 0) or 0),
            "completion_tokens": int(raw_usage.get("completion_tokens", 0) or 0),
            "total_tokens": int(raw_usage.get("total_tokens", 0) or 0),
        }

        tool_calls = self._parse_tool_calls(message.get("tool_calls") or [])
        if tool_calls:
            return LLMResponse.calls(tool_calls, content=content, model=self.model, usage=usage)
        return LLMResponse.text(content, model=self.model, usage=usage)

    async def probe_rate_limit(self) -> int | None:
        """Send a one-token request and read the tokens-per-minute limit header."""
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": "hi"}],
            "max_tokens": 1,
        }
        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                json=body,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            log.debug("Rate limit probe failed", provider=self.name, error=str(e))
            return None
        raw = response.headers.get("x-ratelimit-limit-tokens", "")
        try:
            value = int(raw)
        except ValueError:
            return None
        return value if value > 0 else None

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    name = "ollama"

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        api_key: str | None = None,
        num_ctx: int = 32768,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen2.5-coder:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            num_ctx: Context window requested from the server
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.num_ctx = num_ctx

        self.client = httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    def _convert_messages(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
    ) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result: list[dict[str, Any]] = []
        if system_prompt:
            result.append({"role": "system", "content": system_prompt})

        for msg in normalize_tool_message_order(messages):
            if msg.role == "assistant":
                entry: dict[str, Any] = {"role": "assistant", "content": msg.content or ""}
                if msg.tool_calls:
                    entry["tool_calls"] = [
                        {"function": {"name": call.name, "arguments": call.arguments}}
                        for call in msg.tool_calls
                    ]
                result.append(entry)
            elif msg.role == "tool":
                entry = {"role": "tool", "content": msg.content or ""}
                if msg.tool_name:
                    entry["tool_name"] = msg.tool_name
                result.append(entry)
            else:
                result.append({"role": msg.role, "content": msg.content or ""})

        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition | dict[str, Any]]) -> list[dict[str, Any]]:
        """Convert tools to Ollama format."""
        result = []
        for tool in tools:
            name, description, parameters = _tool_definition_fields(tool)
            if name:
                result.append({
                    "type": "function",
                    "function": {
                        "name": name,
                        "description": description,
                        "parameters": parameters,
                    },
                })
        return result

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition | dict[str, Any]] | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/api/chat"

        options: dict[str, Any] = {
            "num_ctx": self.num_ctx,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if max_tokens or self.max_tokens:
            options["num_predict"] = max_tokens or self.max_tokens

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages, system_prompt),
            "stream": False,
            "options": options,
        }
        ollama_tools = self._convert_tools(tools) if tools else []
        if ollama_tools:
            body["tools"] = ollama_tools

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}")

        if not response.is_success:
            raise LLMAPIError(
                f"Ollama API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}")

        message = data.get("message", {}) or {}
        content = message.get("content", "") or ""
        usage = {
            "prompt_tokens": data.get("prompt_eval_count", 0),
            "completion_tokens": data.get("eval_count", 0),
            "total_tokens": data.get("prompt_eval_count", 0) + data.get("eval_count", 0),
        }

        tool_calls: list[ToolCall] = []
        for idx, tc in enumerate(message.get("tool_calls") or [], start=1):
            function = tc.get("function", {}) or {}
            arguments = function.get("arguments", {})
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError:
                    arguments = {"raw": arguments}
            tool_calls.append(ToolCall(
                id=f"ollama_call_{tc.get('id') or idx}",
                name=function.get("name", ""),
                arguments=arguments if isinstance(arguments, dict) else {},
            ))

        if tool_calls:
            return LLMResponse.calls(tool_calls, content=content, model=self.model, usage=usage)
        return LLMResponse.text(content, model=self.model, usage=usage)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "groq",
    model: str = "qwen-2.5-coder-32b",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.2,
    max_tokens: int = 8192,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (groq, openrouter, openai, ollama)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL (any OpenAI-compatible endpoint)
        temperature: Default temperature
        max_tokens: Default max tokens

    Returns:
        Configured LLMProvider instance
    """
    name = str(provider or "").strip().lower()
    if name == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
        )
    if name in PROVIDER_BASE_URLS or base_url:
        return OpenAICompatibleProvider(
            provider=name,
            model=model,
            api_key=api_key,
            base_url=base_url,
            temperature=temperature,
            max_tokens=max_tokens,
        )
    raise ValueError(
        f"Provider '{provider}' not supported. Use one of: "
        f"{', '.join(sorted([*PROVIDER_BASE_URLS, 'ollama']))} or set a base_url."
    )
