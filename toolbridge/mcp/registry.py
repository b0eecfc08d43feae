"""Connection registry: owns every live MCP session and its connection state."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from toolbridge.mcp.schema import ConnectionState, ProviderConfig, ProviderStatus, ToolCallResult
from toolbridge.mcp.transport import ProviderRPCError, Transport, TransportError, create_transport

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Hard failure: the bridge could not get a request to a provider."""


class NotConnectedError(RegistryError):
    """Raised when a provider has no Connected session."""


class ToolInvocationError(RegistryError):
    """Raised when a tool call could not be delivered to, or answered by, the provider."""


@dataclass
class Session:
    """Runtime binding of one ProviderConfig to a transport."""

    config: ProviderConfig
    transport: Transport
    state: ConnectionState = ConnectionState.CONNECTING
    error: Optional[str] = None


def flatten_content(content: Any) -> Any:
    """
    Reduce an MCP ``content`` list for display and for the model.

    Text items become their text; other items pass through untouched.
    A single-item list is unwrapped to that item.
    """
    if not isinstance(content, list):
        return content
    flat = [
        c.get("text", "") if isinstance(c, dict) and c.get("type") == "text" else c
        for c in content
    ]
    return flat[0] if len(flat) == 1 else flat


class ConnectionRegistry:
    """
    Owns the set of live provider sessions.

    The registry is long-lived (one per process) and is handed to whatever
    needs it rather than reached through a global. It is the only place
    that changes a session's ConnectionState.

    Operations on one provider id are serialized through a per-id lock in
    arrival order: a ``disconnect`` issued while a ``connect`` is in flight
    waits for the connect to settle and then tears it down. Different
    provider ids never wait on each other.
    """

    def __init__(
        self,
        transport_factory: Optional[Callable[[ProviderConfig], Transport]] = None,
        connect_timeout: float = 30.0,
        request_timeout: float = 60.0,
    ):
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self._transport_factory = transport_factory or (
            lambda config: create_transport(config, request_timeout=request_timeout)
        )
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, provider_id: str) -> asyncio.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = self._locks[provider_id] = asyncio.Lock()
        return lock

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def connect(self, config: ProviderConfig) -> ProviderStatus:
        """
        Connect to a provider and return the settled status.

        Idempotent for an already Connected provider. Any other existing
        session is torn down first. The returned state is always Connected
        or Error, never Connecting.

        Raises
        ------
        ConfigError
            The config is missing its URL/command or has a malformed URL.
            Raised before any session is touched.
        """
        config.validate_transport()

        async with self._lock_for(config.id):
            existing = self._sessions.get(config.id)
            if existing and existing.state is ConnectionState.CONNECTED:
                return self.get_status(config.id)
            if existing:
                await self._teardown(config.id)

            transport = self._transport_factory(config)
            session = Session(config=config, transport=transport)
            self._sessions[config.id] = session
            logger.info("Connecting to provider %s (%s)", config.id, config.transport)

            try:
                await asyncio.wait_for(transport.connect(), self.connect_timeout)
            except asyncio.TimeoutError:
                await self._close_quietly(config.id, transport)
                self._settle_error(session, f"Connection timed out after {self.connect_timeout}s")
            except asyncio.CancelledError:
                await self._close_quietly(config.id, transport)
                self._settle_error(session, "Connection attempt was cancelled")
                raise
            except Exception as exc:
                await self._close_quietly(config.id, transport)
                self._settle_error(session, str(exc) or exc.__class__.__name__)
            else:
                session.state = ConnectionState.CONNECTED
                logger.info("Provider %s connected", config.id)

        return self.get_status(config.id)

    async def disconnect(self, provider_id: str) -> None:
        """Tear down a provider's session. A no-op for unknown ids."""
        async with self._lock_for(provider_id):
            await self._teardown(provider_id)

    async def close_all(self) -> None:
        """Disconnect every session (process teardown)."""
        await asyncio.gather(*(self.disconnect(pid) for pid in list(self._sessions)))

    async def _teardown(self, provider_id: str) -> None:
        session = self._sessions.pop(provider_id, None)
        if session is None:
            return
        await self._close_quietly(provider_id, session.transport)
        logger.info("Provider %s disconnected", provider_id)

    @staticmethod
    async def _close_quietly(provider_id: str, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as exc:
            logger.debug("Ignoring close failure for %s: %s", provider_id, exc)

    @staticmethod
    def _settle_error(session: Session, message: str) -> None:
        session.state = ConnectionState.ERROR
        session.error = message
        logger.warning("Provider %s failed to connect: %s", session.config.id, message)

    # ── Status ────────────────────────────────────────────────────────────

    def get_status(self, provider_id: str) -> ProviderStatus:
        session = self._sessions.get(provider_id)
        if session is None:
            return ProviderStatus(id=provider_id, status=ConnectionState.DISCONNECTED)
        return ProviderStatus(id=provider_id, status=session.state, error=session.error)

    def get_statuses(self, ids: Optional[List[str]] = None) -> List[ProviderStatus]:
        """Statuses for ``ids``, or for every known session when ``ids`` is empty."""
        if ids:
            return [self.get_status(pid) for pid in ids]
        return [self.get_status(pid) for pid in list(self._sessions)]

    def is_connected(self, provider_id: str) -> bool:
        session = self._sessions.get(provider_id)
        return session is not None and session.state is ConnectionState.CONNECTED

    def get_config(self, provider_id: str) -> Optional[ProviderConfig]:
        session = self._sessions.get(provider_id)
        return session.config if session else None

    def provider_name(self, provider_id: str) -> str:
        """Display name of a provider, falling back to its id."""
        config = self.get_config(provider_id)
        return config.display_name if config else provider_id

    # ── Requests ──────────────────────────────────────────────────────────

    def _require_connected(self, provider_id: str) -> Session:
        session = self._sessions.get(provider_id)
        if session is None or session.state is not ConnectionState.CONNECTED:
            raise NotConnectedError(f"Provider {provider_id} is not connected")
        return session

    async def request(
        self, provider_id: str, method: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Send a raw request to a Connected provider."""
        session = self._require_connected(provider_id)
        return await session.transport.request(method, params)

    async def call_tool(
        self, provider_id: str, tool_name: str, args: Optional[Dict[str, Any]] = None
    ) -> ToolCallResult:
        """
        Invoke a tool on a Connected provider.

        Errors the provider itself reports (``isError`` results or a
        JSON-RPC error reply) come back as ``ToolCallResult(is_error=True)``.

        Raises
        ------
        NotConnectedError
            The provider has no Connected session.
        ToolInvocationError
            The request never got an answer (transport broken, timeout).
        """
        session = self._require_connected(provider_id)
        logger.info("Calling tool %s on %s", tool_name, provider_id)
        try:
            result = await session.transport.request(
                "tools/call", {"name": tool_name, "arguments": args or {}}
            )
        except ProviderRPCError as exc:
            return ToolCallResult(content=str(exc), is_error=True)
        except TransportError as exc:
            raise ToolInvocationError(f"Tool {tool_name} on {provider_id} failed: {exc}") from exc

        return ToolCallResult(
            content=flatten_content(result.get("content", [])),
            is_error=bool(result.get("isError", False)),
        )
