"""Data models for tool providers: connection config, status, capabilities, call results."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from toolbridge.validation.config import ProviderConfig, TransportKind

__all__ = [
    "Capabilities",
    "ConnectionState",
    "Prompt",
    "PromptArgument",
    "ProviderConfig",
    "ProviderStatus",
    "Resource",
    "Tool",
    "ToolCallResult",
    "TransportKind",
]


class ConnectionState(str, Enum):
    """Lifecycle state of one provider session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ProviderStatus(BaseModel):
    id: str
    status: ConnectionState
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "status": self.status.value}
        if self.error is not None:
            data["error"] = self.error
        return data


# ── Capabilities ──────────────────────────────────────────────────────────


class Tool(BaseModel):
    """A callable tool as advertised by ``tools/list``."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = Field(default=None, alias="inputSchema")


class PromptArgument(BaseModel):
    name: str
    description: Optional[str] = None
    required: Optional[bool] = None


class Prompt(BaseModel):
    name: str
    description: Optional[str] = None
    arguments: Optional[List[PromptArgument]] = None


class Resource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    uri: str
    name: str
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class Capabilities(BaseModel):
    tools: List[Tool] = Field(default_factory=list)
    prompts: List[Prompt] = Field(default_factory=list)
    resources: List[Resource] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ── Tool execution ────────────────────────────────────────────────────────


class ToolCallResult(BaseModel):
    """
    Outcome of ``tools/call`` that reached the provider.

    ``is_error`` marks a soft failure: the provider ran and reported an
    error. The content is still fed back to the model as a tool result.
    """

    content: Any = None
    is_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"result": self.content, "isError": self.is_error}
