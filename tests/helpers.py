"""Test doubles for MCP transports and the model provider."""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from toolbridge.mcp.registry import ConnectionRegistry
from toolbridge.mcp.transport import Transport
from toolbridge.providers.base import FunctionCall, ModelProvider, StreamItem
from toolbridge.validation.config import ProviderConfig


@dataclass
class RpcError:
    """Makes FakeTransport answer with a JSON-RPC error object."""

    code: int
    message: str


Handler = Union[Dict[str, Any], RpcError, BaseException, Callable[[Dict[str, Any]], Any]]


class FakeTransport(Transport):
    """
    In-memory MCP transport.

    ``responses`` maps a method name to a result dict, an RpcError, an
    exception to raise, or a (sync or async) callable taking the params.
    Unknown methods answer with an empty result.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, Handler]] = None,
        connect_error: Optional[BaseException] = None,
        connect_delay: float = 0.0,
        request_timeout: float = 5.0,
    ):
        super().__init__(request_timeout)
        self.responses = responses or {}
        self.connect_error = connect_error
        self.connect_delay = connect_delay
        self.running = False
        self.closed = False
        self.calls: List[tuple] = []
        self.notifications: List[str] = []

    async def start(self) -> None:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self.running = True

    async def close(self) -> None:
        self.running = False
        self.closed = True

    @property
    def is_running(self) -> bool:
        return self.running

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        self.notifications.append(method)

    async def _exchange(self, message: Dict[str, Any]) -> Dict[str, Any]:
        method, params = message["method"], message["params"]
        self.calls.append((method, params))
        handler = self.responses.get(method, {})
        if isinstance(handler, BaseException):
            raise handler
        if callable(handler):
            handler = handler(params)
            if inspect.isawaitable(handler):
                handler = await handler
        if isinstance(handler, RpcError):
            return {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": handler.code, "message": handler.message},
            }
        return {"jsonrpc": "2.0", "id": message["id"], "result": handler}


def tools_result(*names: str) -> Dict[str, Any]:
    return {
        "tools": [
            {"name": n, "description": f"{n} tool", "inputSchema": {"type": "object", "properties": {}}}
            for n in names
        ]
    }


def stdio_config(provider_id: str, name: str = "", **kwargs: Any) -> ProviderConfig:
    return ProviderConfig(id=provider_id, name=name, transport="stdio", command="fake-mcp", **kwargs)


def registry_for(transports: Dict[str, FakeTransport], **kwargs: Any) -> ConnectionRegistry:
    return ConnectionRegistry(transport_factory=lambda config: transports[config.id], **kwargs)


# ── Model provider ──────────────────────────────────────────────────────


def text(fragment: str) -> StreamItem:
    return StreamItem(text=fragment)


def call(name: str, **args: Any) -> StreamItem:
    return StreamItem(function_calls=[FunctionCall(name=name, args=args)])


class FakeProvider(ModelProvider):
    """
    Scripted streaming provider.

    ``script`` holds StreamItems to yield in order; an exception in the
    script is raised at that point of the stream. ``start_error`` is raised
    before any stream is returned.
    """

    def __init__(self, script: Optional[List[Any]] = None, start_error: Optional[BaseException] = None):
        super().__init__(model="fake-model")
        self.script = script or []
        self.start_error = start_error
        self.requests: List[Dict[str, Any]] = []
        self.yielded = 0
        self.stream_closed = False

    @property
    def provider_name(self) -> str:
        return "fake"

    async def generate_stream(self, contents, declarations=None, system_instruction=None):
        self.requests.append({
            "contents": contents,
            "declarations": declarations,
            "system_instruction": system_instruction,
        })
        if self.start_error is not None:
            raise self.start_error
        return self._iterate(list(self.script))

    async def _iterate(self, script: List[Any]):
        try:
            for item in script:
                await asyncio.sleep(0)
                if isinstance(item, BaseException):
                    raise item
                self.yielded += 1
                yield item
        finally:
            self.stream_closed = True
