"""MCP server communication over stdio subprocesses and streamable HTTP."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from toolbridge import __version__
from toolbridge.validation.config import ProviderConfig

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-03-26"

# Tool results can be large; asyncio's default line limit is 64 KiB.
STDIO_LINE_LIMIT = 16 * 1024 * 1024


class TransportError(Exception):
    """Raised when the bridge cannot reach an MCP server."""


class ProviderRPCError(TransportError):
    """The MCP server answered a request with a JSON-RPC error object."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class Transport(ABC):
    """
    One JSON-RPC channel to an MCP server.

    Subclasses supply ``start``/``close`` and the raw request/notify
    exchange; the handshake and error unwrapping are shared.
    """

    def __init__(self, request_timeout: float = 60.0):
        self.request_timeout = request_timeout
        self._request_id = 0
        self.server_info: Dict[str, Any] = {}

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @abstractmethod
    async def start(self) -> None:
        """Open the underlying channel."""

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying channel. Safe to call twice."""

    @property
    @abstractmethod
    def is_running(self) -> bool: ...

    async def connect(self) -> None:
        """Open the channel and perform the MCP initialize handshake."""
        await self.start()
        self.server_info = await self.initialize()

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    @abstractmethod
    async def _exchange(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Send one request message and return the matching response message."""

    @abstractmethod
    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a JSON-RPC notification (no response expected)."""

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send a JSON-RPC request and return its result.

        Raises
        ------
        ProviderRPCError
            The server replied with an ``error`` object.
        TransportError
            The server could not be reached, or did not reply in time.
        """
        if not self.is_running:
            raise TransportError("MCP transport is not running")

        message = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": method,
            "params": params or {},
        }
        try:
            response = await asyncio.wait_for(self._exchange(message), self.request_timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"MCP request timed out after {self.request_timeout}s: {method}")

        if "error" in response:
            err = response["error"] or {}
            if isinstance(err, dict):
                raise ProviderRPCError(
                    f"MCP error {err.get('code')}: {err.get('message')}",
                    code=err.get("code"),
                    data=err.get("data"),
                )
            raise ProviderRPCError(f"MCP error: {err}")
        result = response.get("result")
        return result if isinstance(result, dict) else {}

    # ── MCP Protocol ──────────────────────────────────────────────────────

    async def initialize(self) -> Dict[str, Any]:
        """Perform the MCP initialize handshake."""
        result = await self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "toolbridge", "version": __version__},
        })
        await self.notify("notifications/initialized")
        return result


class StdioTransport(Transport):
    """
    Communicate with an MCP server over stdin/stdout (newline-delimited JSON-RPC).

    A background reader routes responses to waiting requests by id, so
    several requests may be in flight at once.
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        request_timeout: float = 60.0,
    ):
        super().__init__(request_timeout)
        self.command = command
        self.args = args or []
        self.env = env or {}
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._stderr_reader: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Spawn the MCP server subprocess."""
        if self.is_running:
            return

        merged_env = {**os.environ, **self.env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
                limit=STDIO_LINE_LIMIT,
            )
        except FileNotFoundError:
            raise TransportError(f"MCP server command not found: {self.command}")
        except OSError as exc:
            raise TransportError(f"Failed to start MCP server '{self.command}': {exc}")

        self._reader = asyncio.create_task(self._read_loop())
        self._stderr_reader = asyncio.create_task(self._drain_stderr())

    async def close(self) -> None:
        """Terminate the MCP server subprocess."""
        for task in (self._reader, self._stderr_reader):
            if task and not task.done():
                task.cancel()
        self._reader = self._stderr_reader = None

        process, self._process = self._process, None
        if process is None:
            return
        if process.stdin and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
        self._fail_pending(TransportError("MCP transport closed"))

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    async def _exchange(self, message: Dict[str, Any]) -> Dict[str, Any]:
        future = asyncio.get_running_loop().create_future()
        self._pending[message["id"]] = future
        try:
            await self._write(message)
            return await future
        finally:
            self._pending.pop(message["id"], None)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            message["params"] = params
        await self._write(message)

    async def _write(self, message: Dict[str, Any]) -> None:
        if not self.is_running or self._process.stdin is None:
            raise TransportError("MCP server is not running")
        line = json.dumps(message, ensure_ascii=False) + "\n"
        async with self._write_lock:
            try:
                self._process.stdin.write(line.encode())
                await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as exc:
                raise TransportError(f"MCP transport error: {exc}")

    async def _read_loop(self) -> None:
        stdout = self._process.stdout
        reason = "MCP server closed connection"
        try:
            while True:
                try:
                    raw = await stdout.readline()
                except ValueError:
                    reason = "MCP server sent a message larger than the line limit"
                    break
                if not raw:
                    break
                line = raw.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except ValueError:
                    logger.debug("Ignoring non-JSON line from %s: %r", self.command, line[:200])
                    continue
                if isinstance(message, dict):
                    await self._dispatch(message)
        finally:
            self._fail_pending(TransportError(reason))

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        if "method" in message:
            # Server-initiated request: answer pings, refuse everything else.
            if "id" in message:
                if message["method"] == "ping":
                    reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
                else:
                    reply = {
                        "jsonrpc": "2.0",
                        "id": message["id"],
                        "error": {"code": -32601, "message": f"Method not found: {message['method']}"},
                    }
                try:
                    await self._write(reply)
                except TransportError:
                    logger.debug("Could not answer server request %s", message["method"])
            return

        try:
            request_id = int(message.get("id"))
        except (TypeError, ValueError):
            return
        future = self._pending.get(request_id)
        if future is not None and not future.done():
            future.set_result(message)

    def _fail_pending(self, exc: TransportError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    async def _drain_stderr(self) -> None:
        stderr = self._process.stderr
        while True:
            try:
                raw = await stderr.readline()
            except ValueError:
                continue
            if not raw:
                return
            logger.debug("[%s] %s", self.command, raw.decode(errors="replace").rstrip())


class StreamableHttpTransport(Transport):
    """
    Communicate with a remote MCP server over the streamable HTTP transport.

    Every message is a POST; the server answers with either a JSON body
    or a ``text/event-stream`` carrying the response.
    """

    SESSION_HEADER = "Mcp-Session-Id"

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        request_timeout: float = 60.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(request_timeout)
        self.url = url
        self.headers = headers or {}
        self._http_transport = http_transport
        self._client: Optional[httpx.AsyncClient] = None
        self._session_id: Optional[str] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self.is_running:
            return
        self._client = httpx.AsyncClient(
            headers=self.headers,
            timeout=self.request_timeout,
            transport=self._http_transport,
        )

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            if self._session_id:
                await client.delete(self.url, headers={self.SESSION_HEADER: self._session_id})
        except httpx.HTTPError as exc:
            logger.debug("Session teardown for %s failed: %s", self.url, exc)
        finally:
            self._session_id = None
            await client.aclose()

    @property
    def is_running(self) -> bool:
        return self._client is not None and not self._client.is_closed

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    async def _exchange(self, message: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._post(message)
        if response is None:
            raise TransportError(f"MCP server sent no response to {message['method']}")
        return response

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            message["params"] = params
        await self._post(message)

    async def _post(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self._client is None:
            raise TransportError("MCP transport is not running")

        headers = {
            "Accept": "application/json, text/event-stream",
            "Content-Type": "application/json",
        }
        if self._session_id:
            headers[self.SESSION_HEADER] = self._session_id

        try:
            async with self._client.stream("POST", self.url, json=message, headers=headers) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode(errors="replace")
                    raise TransportError(f"MCP HTTP {response.status_code}: {body[:200]}")

                session_id = response.headers.get(self.SESSION_HEADER)
                if session_id:
                    self._session_id = session_id

                if "id" not in message:
                    return None

                content_type = response.headers.get("content-type", "")
                if content_type.startswith("text/event-stream"):
                    return await self._read_event_stream(response, message["id"])

                body = await response.aread()
                if not body.strip():
                    return None
                try:
                    data = json.loads(body)
                except ValueError:
                    raise TransportError("MCP server returned a non-JSON body")
                return self._match(data, message["id"])
        except httpx.HTTPError as exc:
            raise TransportError(f"MCP HTTP error: {exc}") from exc

    async def _read_event_stream(self, response: httpx.Response, request_id: int) -> Dict[str, Any]:
        data_lines: List[str] = []
        async for line in response.aiter_lines():
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
                continue
            if line.strip() or not data_lines:
                continue
            payload, data_lines = "\n".join(data_lines), []
            try:
                found = self._match(json.loads(payload), request_id)
            except ValueError:
                continue
            if found is not None:
                return found
        raise TransportError("MCP event stream ended before a response arrived")

    @staticmethod
    def _match(data: Any, request_id: int) -> Optional[Dict[str, Any]]:
        messages = data if isinstance(data, list) else [data]
        for msg in messages:
            if isinstance(msg, dict) and msg.get("id") == request_id and "method" not in msg:
                return msg
        return None


def create_transport(config: ProviderConfig, request_timeout: float = 60.0) -> Transport:
    """Build the transport matching a provider config."""
    if config.transport == "streamable-http":
        return StreamableHttpTransport(
            url=config.url or "",
            headers=config.clean_headers(),
            request_timeout=request_timeout,
        )
    return StdioTransport(
        command=config.command or "",
        args=list(config.args),
        env=dict(config.env),
        request_timeout=request_timeout,
    )
