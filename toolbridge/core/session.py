"""
Streaming session driver.

One StreamingSession drives exactly one request to the model::

    IDLE --> REQUESTING --> STREAMING --> COMPLETED
                 |              |
                 +--------------+-----> FAILED

Follow-up rounds after tool execution are new sessions. The tool mapping
and the response accumulator belong to the session and die with it.
"""

import logging
from enum import Enum
from typing import AsyncIterator, List, Optional, Sequence

from toolbridge.core.conversation import Message, ToolCall
from toolbridge.core.events import DONE, ERROR, ChatEvent
from toolbridge.core.transcoder import ResponseAccumulator, append_tool_results, decode_stream, to_contents
from toolbridge.mcp.capabilities import CapabilityDirectory
from toolbridge.mcp.naming import ToolMapping, to_function_declarations
from toolbridge.providers.base import ModelProvider

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionReusedError(Exception):
    """Raised when a finished or running session is started again."""


class StreamingSession:
    """
    Run one streamed generation and forward its events.

    Example:
        >>> session = StreamingSession(provider, directory, system_instruction)
        >>> async for event in session.run(messages, ["weather"]):
        ...     print(encode_sse(event))
        >>> session.response().tool_calls
    """

    def __init__(
        self,
        provider: ModelProvider,
        directory: CapabilityDirectory,
        system_instruction: Optional[str] = None,
    ):
        self._provider = provider
        self._directory = directory
        self._system_instruction = system_instruction
        self.state = SessionState.IDLE
        self.mapping = ToolMapping()
        self.accumulator = ResponseAccumulator()

    def response(self) -> Message:
        """Assistant message assembled from the events forwarded so far."""
        return self.accumulator.to_message()

    async def run(
        self,
        messages: Sequence[Message],
        provider_ids: Sequence[str] = (),
        tool_results: Optional[List[ToolCall]] = None,
    ) -> AsyncIterator[ChatEvent]:
        """
        Stream one round.

        Args:
            messages: Conversation history.
            provider_ids: Providers whose tools the model may call. Providers
                that are not connected contribute no tools.
            tool_results: Calls executed after ``messages`` was captured,
                replayed after the history.

        Yields:
            ChatEvents; the last one is always ``done`` or ``error``.
        """
        if self.state is not SessionState.IDLE:
            raise SessionReusedError(f"Session already {self.state.value}")
        self.state = SessionState.REQUESTING

        stream = None
        events = None
        setup_error: Optional[str] = None
        try:
            try:
                server_tools = await self._directory.collect_tools(list(provider_ids))
                declarations, self.mapping = to_function_declarations(server_tools)
                contents = to_contents(messages)
                if tool_results:
                    contents = append_tool_results(contents, tool_results)
                logger.debug(
                    "Requesting generation: %d turns, %d functions", len(contents), len(declarations)
                )
                stream = await self._provider.generate_stream(
                    contents, declarations or None, self._system_instruction
                )
            except Exception as exc:
                logger.error("Generation request failed: %s", exc)
                setup_error = str(exc) or type(exc).__name__

            if setup_error is not None:
                self.state = SessionState.FAILED
                yield ChatEvent.error(setup_error)
                return

            self.state = SessionState.STREAMING
            events = decode_stream(stream, self.mapping, self.accumulator)
            async for event in events:
                if event.event == DONE:
                    self.state = SessionState.COMPLETED
                elif event.event == ERROR:
                    self.state = SessionState.FAILED
                yield event
        finally:
            if self.state in (SessionState.REQUESTING, SessionState.STREAMING):
                logger.debug("Session closed by consumer while %s", self.state.value)
                self.state = SessionState.FAILED
            if events is not None:
                await events.aclose()
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
