"""
MCP side of the bridge.

Owns connections to tool providers (stdio subprocesses or streamable HTTP
endpoints), reads their capabilities, and turns their tools into flat
function identifiers the model can call:

    provider tools --> CapabilityDirectory --> to_function_declarations --> model
    model call     --> ToolMapping.resolve --> ConnectionRegistry.call_tool --> provider
"""

from toolbridge.mcp.capabilities import CapabilityDirectory
from toolbridge.mcp.naming import FunctionDeclaration, ServerTool, ToolMapping, ToolTarget, to_function_declarations
from toolbridge.mcp.registry import ConnectionRegistry, NotConnectedError, RegistryError, ToolInvocationError
from toolbridge.mcp.schema import (
    Capabilities,
    ConnectionState,
    Prompt,
    ProviderConfig,
    ProviderStatus,
    Resource,
    Tool,
    ToolCallResult,
)
from toolbridge.mcp.transport import (
    ProviderRPCError,
    StdioTransport,
    StreamableHttpTransport,
    Transport,
    TransportError,
    create_transport,
)

__all__ = [
    "Capabilities",
    "CapabilityDirectory",
    "ConnectionRegistry",
    "ConnectionState",
    "FunctionDeclaration",
    "NotConnectedError",
    "Prompt",
    "ProviderConfig",
    "ProviderRPCError",
    "ProviderStatus",
    "RegistryError",
    "Resource",
    "ServerTool",
    "StdioTransport",
    "StreamableHttpTransport",
    "Tool",
    "ToolCallResult",
    "ToolInvocationError",
    "ToolMapping",
    "ToolTarget",
    "Transport",
    "TransportError",
    "create_transport",
    "to_function_declarations",
]
