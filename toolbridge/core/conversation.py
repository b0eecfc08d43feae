"""
Conversation records: messages and the tool calls embedded in them.

A ToolCall moves through a small state machine::

    pending --> executing --> completed | error
    pending --> rejected

completed, error and rejected are terminal. Only completed and error calls
have actually run, and only those are replayed to the model.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from toolbridge.mcp.schema import ToolCallResult


class InvalidTransitionError(Exception):
    """Raised when a tool call status change breaks the state machine."""


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"
    REJECTED = "rejected"


_TRANSITIONS = {
    ToolCallStatus.PENDING: {ToolCallStatus.EXECUTING, ToolCallStatus.REJECTED},
    ToolCallStatus.EXECUTING: {ToolCallStatus.COMPLETED, ToolCallStatus.ERROR},
}

EXECUTED_STATUSES = frozenset({ToolCallStatus.COMPLETED, ToolCallStatus.ERROR})
TERMINAL_STATUSES = EXECUTED_STATUSES | {ToolCallStatus.REJECTED}


def new_id() -> str:
    return uuid.uuid4().hex


class ToolCall(BaseModel):
    """One tool invocation requested by the model inside an assistant message."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    server_id: str = Field(default="", alias="serverId")
    server_name: str = Field(default="", alias="serverName")
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    # The flat identifier the model used; needed to replay this call.
    function_name: Optional[str] = Field(default=None, alias="_functionName")

    @property
    def wire_name(self) -> str:
        return self.function_name or self.name

    @property
    def is_executed(self) -> bool:
        return self.status in EXECUTED_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _advance(self, status: ToolCallStatus) -> None:
        if status not in _TRANSITIONS.get(self.status, set()):
            raise InvalidTransitionError(
                f"Tool call {self.id}: cannot go from {self.status.value} to {status.value}"
            )
        self.status = status

    def start(self) -> None:
        self._advance(ToolCallStatus.EXECUTING)

    def reject(self) -> None:
        self._advance(ToolCallStatus.REJECTED)

    def complete(self, result: Any) -> None:
        self._advance(ToolCallStatus.COMPLETED)
        self.result = result

    def fail(self, error: str, result: Any = None) -> None:
        self._advance(ToolCallStatus.ERROR)
        self.error = error
        self.result = result

    def finish(self, outcome: ToolCallResult) -> None:
        """Record a provider outcome; soft failures keep their content as the result."""
        if outcome.is_error:
            if isinstance(outcome.content, str):
                text = outcome.content
            else:
                text = json.dumps(outcome.content, ensure_ascii=False)
            self.fail(text, result=outcome.content)
        else:
            self.complete(outcome.content)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class Message(BaseModel):
    """One conversational turn."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    role: Literal["user", "assistant"]
    content: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    tool_calls: List[ToolCall] = Field(default_factory=list, alias="toolCalls")

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: Optional[List[ToolCall]] = None) -> "Message":
        return cls(role="assistant", content=content, tool_calls=tool_calls or [])

    def executed_tool_calls(self) -> List[ToolCall]:
        return [tc for tc in self.tool_calls if tc.is_executed]

    def pending_tool_calls(self) -> List[ToolCall]:
        return [tc for tc in self.tool_calls if tc.status is ToolCallStatus.PENDING]

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


def coerce_messages(messages: List[Any]) -> List[Message]:
    """Accept Message objects or their wire dicts."""
    return [m if isinstance(m, Message) else Message.model_validate(m) for m in messages]
