"""Conversation state shared by the agent loop and the context budget."""

from dataclasses import dataclass, field
from deckhand.llm import Message


@dataclass
class Conversation:
    """Ordered message history plus the active model's token ceiling."""

    messages: list[Message] = field(default_factory=list)
    model: str = ""
    max_tokens: int = 32768

    def append(self, message: Message) -> Message:
        self.messages.append(message)
        return message

    def replace(self, messages: list[Message]) -> None:
        """Swap the whole history in place."""
        self.messages[:] = list(messages)

    def clear(self) -> None:
        self.messages.clear()

    def tool_call_ids(self) -> set[str]:
        ids: set[str] = set()
        for msg in self.messages:
            if msg.role == "assistant" and msg.tool_calls:
                ids.update(call.id for call in msg.tool_calls)
        return ids

    def has_valid_tool_references(self) -> bool:
        """Every tool message answers a call requested earlier in the history."""
        requested: set[str] = set()
        for msg in self.messages:
            if msg.role == "assistant" and msg.tool_calls:
                requested.update(call.id for call in msg.tool_calls)
            elif msg.role == "tool" and msg.tool_call_id not in requested:
                return False
        return True

    def __len__(self) -> int:
        return len(self.messages)
