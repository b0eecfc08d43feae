"""
Client-facing event protocol.

Every streamed round produces a sequence of ChatEvents. ``text`` and
``tool_call`` events arrive in model order; exactly one terminal event
(``done`` or ``error``) closes the sequence.

Events are framed for Server-Sent Events as::

    event: <name>
    data: <json>

"""

import codecs
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Dict, Union

TEXT = "text"
TOOL_CALL = "tool_call"
TOOL_RESULT = "tool_result"
DONE = "done"
ERROR = "error"

TERMINAL_EVENTS = frozenset({DONE, ERROR})

SSE_HEADERS: Dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


@dataclass
class ChatEvent:
    """One event of the client protocol."""

    event: str
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def text(cls, chunk: str) -> "ChatEvent":
        return cls(TEXT, {"chunk": chunk})

    @classmethod
    def tool_call(
        cls,
        id: str,
        server_id: str,
        server_name: str,
        name: str,
        args: Dict[str, Any],
        function_name: str,
    ) -> "ChatEvent":
        return cls(
            TOOL_CALL,
            {
                "id": id,
                "serverId": server_id,
                "serverName": server_name,
                "name": name,
                "args": args,
                "_functionName": function_name,
            },
        )

    @classmethod
    def tool_result(cls, id: str, result: Any, is_error: bool = False) -> "ChatEvent":
        return cls(TOOL_RESULT, {"id": id, "result": result, "isError": is_error})

    @classmethod
    def done(cls) -> "ChatEvent":
        return cls(DONE, {})

    @classmethod
    def error(cls, message: str) -> "ChatEvent":
        return cls(ERROR, {"message": message})

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event, "data": self.data}


def encode_sse(event: ChatEvent) -> str:
    """Frame one event for a text/event-stream body."""
    return f"event: {event.event}\ndata: {json.dumps(event.data, ensure_ascii=False)}\n\n"


def _parse_block(block: str) -> Union[ChatEvent, None]:
    event_type = "message"
    data = ""
    for line in block.split("\n"):
        if line.startswith("event:"):
            event_type = line[6:].strip()
        elif line.startswith("data: "):
            data += line[6:]
        elif line.startswith("data:"):
            data += line[5:]
    if not data:
        return None
    try:
        return ChatEvent(event_type, json.loads(data))
    except json.JSONDecodeError:
        return ChatEvent(event_type, data)  # type: ignore[arg-type]


async def parse_sse(chunks: AsyncIterable[Union[bytes, str]]) -> AsyncIterator[ChatEvent]:
    """
    Parse an SSE body into ChatEvents.

    Parameters
    ----------
    chunks:
        Body fragments in arrival order. Fragments may split events, lines
        or multi-byte characters anywhere. Invalid UTF-8 bytes decode to U+FFFD.

    Blocks without a ``data:`` line are skipped. A payload that is not
    valid JSON is delivered as the raw string. A trailing block without the
    closing blank line is dropped.
    """
    buffer = ""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    async for chunk in chunks:
        if isinstance(chunk, bytes):
            text = decoder.decode(chunk)
        else:
            text = chunk
        buffer += text.replace("\r\n", "\n")

        *blocks, buffer = buffer.split("\n\n")
        for block in blocks:
            if not block.strip():
                continue
            event = _parse_block(block)
            if event is not None:
                yield event
