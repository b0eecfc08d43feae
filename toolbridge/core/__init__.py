"""
ToolBridge core module.

Conversation records, the transcoder between history and model turns, the
client event protocol, the per-round streaming session and the facade.
"""

from toolbridge.core.bridge import ToolBridge
from toolbridge.core.conversation import InvalidTransitionError, Message, ToolCall, ToolCallStatus
from toolbridge.core.events import ChatEvent, encode_sse, parse_sse
from toolbridge.core.session import SessionState, StreamingSession

__all__ = [
    "ChatEvent",
    "InvalidTransitionError",
    "Message",
    "SessionState",
    "StreamingSession",
    "ToolBridge",
    "ToolCall",
    "ToolCallStatus",
    "encode_sse",
    "parse_sse",
]
