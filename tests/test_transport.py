"""Tests for the stdio and streamable HTTP transports."""

import json
import sys
import textwrap

import httpx
import pytest

from toolbridge.mcp.transport import (
    PROTOCOL_VERSION,
    ProviderRPCError,
    StdioTransport,
    StreamableHttpTransport,
    TransportError,
    create_transport,
)
from toolbridge.validation.config import ProviderConfig

SERVER_SCRIPT = textwrap.dedent('''
    import json
    import os
    import sys

    print("starting up, not json", flush=True)
    print("log line", file=sys.stderr, flush=True)

    def reply(msg_id, result=None, error=None):
        out = {"jsonrpc": "2.0", "id": msg_id}
        if error is not None:
            out["error"] = error
        else:
            out["result"] = result
        sys.stdout.write(json.dumps(out) + "\\n")
        sys.stdout.flush()

    while True:
        line = sys.stdin.readline()
        if not line:
            break
        msg = json.loads(line)
        if "id" not in msg:
            continue
        method, params = msg["method"], msg.get("params") or {}
        if method == "initialize":
            reply(msg["id"], {"protocolVersion": params["protocolVersion"], "capabilities": {"tools": {}},
                              "serverInfo": {"name": "fake", "version": "0"}})
        elif method == "tools/list":
            reply(msg["id"], {"tools": [{"name": "echo", "inputSchema": {"type": "object"}}]})
        elif method == "tools/call":
            name, args = params["name"], params.get("arguments") or {}
            if name == "crash":
                sys.exit(1)
            if name == "env":
                reply(msg["id"], {"content": [{"type": "text", "text": os.environ.get(args["var"], "")}]})
            else:
                reply(msg["id"], {"content": [{"type": "text", "text": args.get("text", "")}]})
        else:
            reply(msg["id"], error={"code": -32601, "message": "Method not found"})
''')


@pytest.fixture
def server_script(tmp_path):
    path = tmp_path / "fake_server.py"
    path.write_text(SERVER_SCRIPT)
    return str(path)


class TestStdioTransport:
    """Newline-delimited JSON-RPC over a subprocess."""

    @pytest.mark.asyncio
    async def test_handshake_and_requests(self, server_script):
        transport = StdioTransport(sys.executable, [server_script], request_timeout=10)
        try:
            await transport.connect()
            assert transport.is_running

            tools = await transport.request("tools/list")
            assert tools["tools"][0]["name"] == "echo"

            result = await transport.request("tools/call", {"name": "echo", "arguments": {"text": "hi"}})
            assert result["content"] == [{"type": "text", "text": "hi"}]
        finally:
            await transport.close()
        assert not transport.is_running

    @pytest.mark.asyncio
    async def test_env_overlay(self, server_script):
        transport = StdioTransport(sys.executable, [server_script], env={"TOOLBRIDGE_TEST": "yes"}, request_timeout=10)
        try:
            await transport.connect()
            result = await transport.request("tools/call", {"name": "env", "arguments": {"var": "TOOLBRIDGE_TEST"}})
            assert result["content"][0]["text"] == "yes"

            path = await transport.request("tools/call", {"name": "env", "arguments": {"var": "PATH"}})
            assert path["content"][0]["text"]
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_rpc_error(self, server_script):
        transport = StdioTransport(sys.executable, [server_script], request_timeout=10)
        try:
            await transport.connect()
            with pytest.raises(ProviderRPCError) as exc_info:
                await transport.request("prompts/list")
            assert exc_info.value.code == -32601
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_server_exit_fails_pending_request(self, server_script):
        transport = StdioTransport(sys.executable, [server_script], request_timeout=10)
        try:
            await transport.connect()
            with pytest.raises(TransportError):
                await transport.request("tools/call", {"name": "crash"})
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_command_not_found(self):
        transport = StdioTransport("definitely-not-a-real-mcp-server-binary")

        with pytest.raises(TransportError, match="not found"):
            await transport.connect()

    @pytest.mark.asyncio
    async def test_request_before_start(self):
        with pytest.raises(TransportError, match="not running"):
            await StdioTransport(sys.executable).request("tools/list")


class FakeHttpServer:
    """httpx.MockTransport handler speaking streamable HTTP."""

    def __init__(self, session_id="session-1", use_sse=True):
        self.session_id = session_id
        self.use_sse = use_sse
        self.requests = []
        self.deleted = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "DELETE":
            self.deleted = True
            return httpx.Response(200)

        message = json.loads(request.content)
        if "id" not in message:
            return httpx.Response(202)

        method = message["method"]
        if method == "initialize":
            body = {"jsonrpc": "2.0", "id": message["id"], "result": {"protocolVersion": PROTOCOL_VERSION}}
            return httpx.Response(200, json=body, headers={"Mcp-Session-Id": self.session_id})
        if method == "boom":
            return httpx.Response(500, text="internal error")
        if method == "tools/list":
            result = {"tools": [{"name": "search"}]}
            body = {"jsonrpc": "2.0", "id": message["id"], "result": result}
        else:
            body = {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32601, "message": "nope"}}

        if self.use_sse:
            notice = {"jsonrpc": "2.0", "method": "notifications/message", "params": {}}
            stream = f"event: message\ndata: {json.dumps(notice)}\n\nevent: message\ndata: {json.dumps(body)}\n\n"
            return httpx.Response(200, content=stream.encode(), headers={"content-type": "text/event-stream"})
        return httpx.Response(200, json=body)


class TestStreamableHttpTransport:
    """POST-per-message JSON-RPC over httpx."""

    @pytest.mark.asyncio
    async def test_session_and_sse(self):
        server = FakeHttpServer()
        transport = StreamableHttpTransport(
            "https://example.com/mcp",
            headers={"Authorization": "Bearer t"},
            http_transport=httpx.MockTransport(server),
        )
        await transport.connect()

        tools = await transport.request("tools/list")
        assert tools == {"tools": [{"name": "search"}]}

        init, initialized, listing = server.requests
        assert "Mcp-Session-Id" not in init.headers
        assert json.loads(init.content)["params"]["protocolVersion"] == PROTOCOL_VERSION
        assert json.loads(initialized.content)["method"] == "notifications/initialized"
        assert listing.headers["Mcp-Session-Id"] == "session-1"
        assert listing.headers["Authorization"] == "Bearer t"
        assert "text/event-stream" in listing.headers["Accept"]

        await transport.close()
        assert server.deleted
        assert server.requests[-1].headers["Mcp-Session-Id"] == "session-1"
        assert not transport.is_running

    @pytest.mark.asyncio
    async def test_plain_json_and_rpc_error(self):
        server = FakeHttpServer(session_id="", use_sse=False)
        transport = StreamableHttpTransport("https://example.com/mcp", http_transport=httpx.MockTransport(server))
        await transport.connect()
        try:
            assert (await transport.request("tools/list"))["tools"][0]["name"] == "search"
            with pytest.raises(ProviderRPCError):
                await transport.request("resources/list")
        finally:
            await transport.close()
        assert not server.deleted

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        transport = StreamableHttpTransport("https://example.com/mcp", http_transport=httpx.MockTransport(FakeHttpServer()))
        await transport.connect()
        try:
            with pytest.raises(TransportError, match="500") as exc_info:
                await transport.request("boom")
            assert not isinstance(exc_info.value, ProviderRPCError)
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = StreamableHttpTransport("https://example.com/mcp", http_transport=httpx.MockTransport(refuse))

        with pytest.raises(TransportError, match="connection refused"):
            await transport.connect()
        await transport.close()


class TestCreateTransport:
    """Transport selection by kind."""

    def test_http(self):
        config = ProviderConfig(
            id="web",
            transport="streamable-http",
            url="https://example.com/mcp",
            headers={"X-Key": "1", " ": "dropped"},
        )

        transport = create_transport(config, request_timeout=3)

        assert isinstance(transport, StreamableHttpTransport)
        assert transport.headers == {"X-Key": "1"}
        assert transport.request_timeout == 3

    def test_stdio(self):
        config = ProviderConfig(id="fs", command="npx", args=["-y", "server"], env={"A": "1"})

        transport = create_transport(config)

        assert isinstance(transport, StdioTransport)
        assert transport.command == "npx"
        assert transport.args == ["-y", "server"]
        assert transport.env == {"A": "1"}
