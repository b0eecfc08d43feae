"""
ToolBridge facade.

Bundles the connection registry, the capability directory and the model
provider behind the control operations a chat front-end needs. Control
operations return JSON-ready dicts; chat rounds return ChatEvent streams.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from toolbridge.core.conversation import ToolCall, coerce_messages
from toolbridge.core.events import ChatEvent
from toolbridge.core.session import StreamingSession
from toolbridge.mcp.capabilities import CapabilityDirectory
from toolbridge.mcp.registry import ConnectionRegistry, NotConnectedError, RegistryError
from toolbridge.providers.base import ModelProvider, ProviderFactory
from toolbridge.validation.config import DEFAULT_SYSTEM_INSTRUCTION, Config, ConfigError, ProviderConfig

logger = logging.getLogger(__name__)


class ToolBridge:
    """
    Long-lived bridge between a chat client, MCP providers and the model.

    One instance lives for the whole process; request handlers receive it
    instead of reaching for a global.

    Example:
        >>> config = Config.load()
        >>> bridge = ToolBridge.from_config(config)
        >>> await bridge.connect(config.get_server("weather"))
        >>> async for event in bridge.chat([{"role": "user", "content": "Hi"}], ["weather"]):
        ...     print(event.event, event.data)
        >>> await bridge.close()
    """

    def __init__(
        self,
        provider: ModelProvider,
        registry: Optional[ConnectionRegistry] = None,
        system_instruction: Optional[str] = DEFAULT_SYSTEM_INSTRUCTION,
    ):
        self.provider = provider
        self.registry = registry or ConnectionRegistry()
        self.directory = CapabilityDirectory(self.registry)
        self.system_instruction = system_instruction

    @classmethod
    def from_config(cls, config: Config) -> "ToolBridge":
        """Build a bridge with the configured model and registry timeouts."""
        settings = config.merged
        registry = ConnectionRegistry(
            connect_timeout=settings.registry.connect_timeout,
            request_timeout=settings.registry.request_timeout,
        )
        return cls(
            provider=ProviderFactory.create(config),
            registry=registry,
            system_instruction=settings.model.system_instruction,
        )

    async def __aenter__(self) -> "ToolBridge":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.registry.close_all()

    # ── Control operations ────────────────────────────────────────────────

    async def connect(self, config: Union[ProviderConfig, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Connect a provider.

        Returns ``{"status": ..., "error"?: ...}``. A configuration problem
        is reported as ``{"status": "error"}`` and leaves every session as
        it was.
        """
        try:
            if not isinstance(config, ProviderConfig):
                try:
                    config = ProviderConfig.model_validate(config)
                except ValidationError as e:
                    raise ConfigError(f"Invalid provider config: {e}")
            status = await self.registry.connect(config)
        except ConfigError as e:
            logger.warning("Rejected provider config: %s", e)
            return {"status": "error", "error": str(e)}

        result: Dict[str, Any] = {"status": status.status.value}
        if status.error:
            result["error"] = status.error
        return result

    async def disconnect(self, provider_id: str) -> Dict[str, Any]:
        await self.registry.disconnect(provider_id)
        return {"status": "disconnected"}

    async def get_status(self, ids: Union[str, Sequence[str], None] = None) -> Dict[str, Any]:
        """Statuses for one id, several ids, or every known session."""
        if isinstance(ids, str):
            ids = [ids]
        statuses = self.registry.get_statuses(list(ids) if ids else None)
        return {"statuses": [s.to_dict() for s in statuses]}

    async def get_capabilities(self, provider_id: str) -> Dict[str, Any]:
        """
        Tools, prompts and resources of a Connected provider.

        Raises:
            NotConnectedError: If the provider is not Connected.
        """
        if not self.registry.is_connected(provider_id):
            raise NotConnectedError(f"Provider {provider_id} is not connected")
        capabilities = await self.directory.get_capabilities(provider_id)
        return capabilities.to_dict()

    async def execute_tool(
        self, provider_id: str, tool_name: str, args: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Run one approved tool call; returns ``{"result", "isError"}``."""
        outcome = await self.registry.call_tool(provider_id, tool_name, args)
        return outcome.to_dict()

    async def run_tool_call(self, call: ToolCall) -> ToolCall:
        """
        Execute a pending ToolCall and record its outcome on it.

        Hard failures (provider not connected, transport broken) are recorded
        as an ``error`` status with their message rather than raised, so the
        call can still be replayed to the model.
        """
        call.start()
        try:
            outcome = await self.registry.call_tool(call.server_id, call.name, call.args)
        except RegistryError as e:
            logger.warning("Tool call %s failed: %s", call.id, e)
            call.fail(str(e))
        else:
            call.finish(outcome)
        return call

    # ── Chat rounds ───────────────────────────────────────────────────────

    def new_session(self) -> StreamingSession:
        return StreamingSession(self.provider, self.directory, self.system_instruction)

    def chat(
        self, messages: List[Any], provider_ids: Sequence[str] = ()
    ) -> AsyncIterator[ChatEvent]:
        """Stream one model round over ``messages``."""
        return self.new_session().run(coerce_messages(messages), provider_ids)

    def continue_with_results(
        self,
        messages: List[Any],
        provider_ids: Sequence[str],
        tool_results: List[Any],
    ) -> AsyncIterator[ChatEvent]:
        """Stream a follow-up round after ``tool_results`` were executed."""
        results = [tc if isinstance(tc, ToolCall) else ToolCall.model_validate(tc) for tc in tool_results]
        return self.new_session().run(coerce_messages(messages), provider_ids, tool_results=results)
