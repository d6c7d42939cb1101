"""Conversation state for a single task.

A ConversationState belongs to exactly one in-flight task. Messages
are only ever appended, never edited or removed.
"""

from collections.abc import Iterator
from typing import Optional

from shared.logging import get_logger
from shared.models import ConversationMessage, LLMResponse, ToolCallRequest

logger = get_logger(__name__)


class ConversationStateError(Exception):
    """The conversation would violate the tool call pairing rules."""
    pass


class ConversationState:
    """
    Ordered, append-only message history for one task.

    Tracks which tool calls of the latest assistant turn are still
    unanswered, so the conversation is never submitted with a
    dangling tool call.
    """

    def __init__(self) -> None:
        self._messages: list[ConversationMessage] = []
        self._pending: dict[str, ToolCallRequest] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ConversationMessage]:
        return iter(self._messages)

    @property
    def messages(self) -> tuple[ConversationMessage, ...]:
        """Immutable view of the history."""
        return tuple(self._messages)

    @property
    def last(self) -> Optional[ConversationMessage]:
        return self._messages[-1] if self._messages else None

    def _append(self, message: ConversationMessage) -> ConversationMessage:
        self._messages.append(message)
        return message

    def add_system_message(self, content: str) -> ConversationMessage:
        """Add a system message to the conversation."""
        return self._append(ConversationMessage(role="system", content=content))

    def add_user_message(self, content: str) -> ConversationMessage:
        """Add a user message to the conversation."""
        self.ensure_answered()
        return self._append(ConversationMessage(role="user", content=content))

    def add_assistant_message(self, response: LLMResponse) -> ConversationMessage:
        """
        Add the model's reply, including any tool calls it requested.

        Raises:
            ConversationStateError: If earlier tool calls are unanswered
                or the reply repeats a call id
        """
        self.ensure_answered()

        ids = [call.id for call in response.tool_calls]
        if len(ids) != len(set(ids)):
            raise ConversationStateError(f"Duplicate tool call ids in one turn: {ids}")

        message = self._append(ConversationMessage(
            role="assistant",
            content=response.content,
            tool_calls=response.tool_calls
        ))
        self._pending = {call.id: call for call in response.tool_calls}
        return message

    def add_tool_result(self, tool_call_id: str, content: str) -> ConversationMessage:
        """
        Answer one outstanding tool call.

        Raises:
            ConversationStateError: If the id is unknown or already answered
        """
        if tool_call_id not in self._pending:
            raise ConversationStateError(
                f"No outstanding tool call with id '{tool_call_id}'"
            )
        del self._pending[tool_call_id]
        return self._append(ConversationMessage(
            role="tool",
            content=content,
            tool_call_id=tool_call_id
        ))

    def unanswered_tool_calls(self) -> list[ToolCallRequest]:
        """Tool calls of the latest assistant turn still awaiting a result."""
        return list(self._pending.values())

    def ensure_answered(self) -> None:
        """
        Raise if the conversation may not be sent to the model yet.

        Raises:
            ConversationStateError: If any tool call is unanswered
        """
        if self._pending:
            raise ConversationStateError(
                f"Unanswered tool calls: {sorted(self._pending)}"
            )


class StepBudget:
    """
    Strictly decreasing count of remaining dispatch cycles.

    Reaching zero is a normal stop condition, not an error.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("Step budget must be at least 1")
        self.limit = limit
        self._remaining = limit

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def used(self) -> int:
        return self.limit - self._remaining

    @property
    def exhausted(self) -> bool:
        return self._remaining == 0

    def consume(self) -> int:
        """Use one step and return how many are left."""
        if self.exhausted:
            raise ConversationStateError("Step budget already exhausted")
        self._remaining -= 1
        return self._remaining
