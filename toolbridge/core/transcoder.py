"""
Conversation transcoder.

Encodes a message history into the turn sequence the model expects, and
decodes the model's streamed output into client events.

Turns are plain dicts in the google-genai content shape::

    {"role": "user" | "model", "parts": [
        {"text": ...},
        {"function_call": {"name": ..., "args": {...}}},
        {"function_response": {"name": ..., "response": {"result": ...}}},
    ]}
"""

import logging
import time
import uuid
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional, Sequence

from toolbridge.core.conversation import Message, ToolCall
from toolbridge.core.events import ChatEvent
from toolbridge.mcp.naming import ToolMapping
from toolbridge.providers.base import FunctionCall, StreamItem

logger = logging.getLogger(__name__)

Turn = Dict[str, Any]

NO_RESULT = "no result"


# ── Encoding ────────────────────────────────────────────────────────────


def _function_call_part(call: ToolCall) -> Dict[str, Any]:
    return {"function_call": {"name": call.wire_name, "args": call.args}}


def _function_response_part(call: ToolCall) -> Dict[str, Any]:
    if call.result is not None:
        value = call.result
    elif call.error is not None:
        value = call.error
    else:
        value = NO_RESULT
    return {"function_response": {"name": call.wire_name, "response": {"result": value}}}


def encode_message(message: Message) -> List[Turn]:
    """
    Encode one message.

    A user message becomes one user turn. An assistant message becomes a
    model turn (its text, then its executed calls) followed by a user turn
    of the matching function results. Pending, executing and rejected calls
    are never replayed.
    """
    if message.role == "user":
        return [{"role": "user", "parts": [{"text": message.content}]}]

    executed = message.executed_tool_calls()
    model_parts: List[Dict[str, Any]] = []
    if message.content:
        model_parts.append({"text": message.content})
    model_parts.extend(_function_call_part(tc) for tc in executed)

    turns: List[Turn] = []
    if model_parts:
        turns.append({"role": "model", "parts": model_parts})
    if executed:
        turns.append({"role": "user", "parts": [_function_response_part(tc) for tc in executed]})
    return turns


def to_contents(messages: Sequence[Message]) -> List[Turn]:
    """Encode a whole history, preserving message order."""
    contents: List[Turn] = []
    for message in messages:
        contents.extend(encode_message(message))
    return contents


def append_tool_results(contents: List[Turn], tool_results: Sequence[ToolCall]) -> List[Turn]:
    """
    Append calls executed since the history was captured.

    Adds one model turn of function calls and one user turn of their
    results. Returns ``contents`` unchanged when there is nothing to add.
    """
    if not tool_results:
        return contents
    return contents + [
        {"role": "model", "parts": [_function_call_part(tc) for tc in tool_results]},
        {"role": "user", "parts": [_function_response_part(tc) for tc in tool_results]},
    ]


# ── Decoding ────────────────────────────────────────────────────────────


def new_call_id() -> str:
    return f"tc_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


class ResponseAccumulator:
    """Text and tool calls collected from one model response."""

    def __init__(self):
        self.text = ""
        self.tool_calls: List[ToolCall] = []

    def add_text(self, fragment: str) -> str:
        self.text += fragment
        return self.text

    def add_call(self, call: ToolCall) -> None:
        self.tool_calls.append(call)

    def to_message(self) -> Message:
        """Assistant message holding everything received so far."""
        return Message.assistant(self.text, [tc.model_copy() for tc in self.tool_calls])


def resolve_call(function_call: FunctionCall, mapping: ToolMapping) -> ToolCall:
    """Build a pending ToolCall; unknown identifiers keep the raw name and no provider."""
    target = mapping.resolve(function_call.name)
    if target is None:
        logger.warning("Model called unknown function %r", function_call.name)
        return ToolCall(
            id=new_call_id(),
            name=function_call.name,
            args=function_call.args,
            function_name=function_call.name,
        )
    return ToolCall(
        id=new_call_id(),
        server_id=target.server_id,
        server_name=target.server_name,
        name=target.tool_name,
        args=function_call.args,
        function_name=function_call.name,
    )


async def decode_stream(
    items: AsyncIterable[StreamItem],
    mapping: ToolMapping,
    accumulator: Optional[ResponseAccumulator] = None,
) -> AsyncIterator[ChatEvent]:
    """
    Turn model stream items into client events.

    Yields ``text`` events with the cumulative text, a ``tool_call`` event
    per function call, then ``done``. A failure while reading ``items``
    yields a single ``error`` event and ends the stream without ``done``.
    """
    acc = accumulator if accumulator is not None else ResponseAccumulator()
    failure: Optional[str] = None
    try:
        async for item in items:
            if item.text:
                yield ChatEvent.text(acc.add_text(item.text))
            for function_call in item.function_calls:
                call = resolve_call(function_call, mapping)
                acc.add_call(call)
                yield ChatEvent.tool_call(
                    call.id, call.server_id, call.server_name, call.name, call.args, call.wire_name
                )
    except Exception as exc:
        logger.error("Model stream failed: %s", exc)
        failure = str(exc) or type(exc).__name__

    if failure is not None:
        yield ChatEvent.error(failure)
    else:
        yield ChatEvent.done()
