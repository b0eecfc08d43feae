"""
ToolBridge - Bridge a streaming chat model to MCP tool providers.

Connects to tool providers over stdio or streamable HTTP, exposes their
tools to the model as callable functions, and streams each model round as
client events, pausing at every tool call for human approval.

Architecture:
- ConnectionRegistry owns one session per provider id
- CapabilityDirectory reads tools, prompts and resources on demand
- Tool names are encoded per request as mcp{index}__{name}
- StreamingSession drives one model round; follow-ups are new rounds
"""

__version__ = "1.0.0"

from toolbridge.core.bridge import ToolBridge
from toolbridge.core.conversation import Message, ToolCall
from toolbridge.core.events import ChatEvent
from toolbridge.mcp.registry import ConnectionRegistry
from toolbridge.validation.config import Config, ProviderConfig

__all__ = [
    "ChatEvent",
    "Config",
    "ConnectionRegistry",
    "Message",
    "ProviderConfig",
    "ToolBridge",
    "ToolCall",
    "__version__",
]
