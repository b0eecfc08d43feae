"""Capability directory: best-effort reads of a provider's tools, prompts and resources."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Sequence, Type, TypeVar

from pydantic import BaseModel

from toolbridge.mcp.naming import ServerTool
from toolbridge.mcp.registry import ConnectionRegistry
from toolbridge.mcp.schema import Capabilities, Prompt, Resource, Tool

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

MAX_PAGES = 20


class CapabilityDirectory:
    """
    Uniform read surface over the registry's Connected providers.

    Nothing is cached: every call goes to the provider. A provider that is
    not Connected, or whose query fails, yields an empty list. Callers that
    need to tell those apart check the registry status first.
    """

    def __init__(self, registry: ConnectionRegistry):
        self._registry = registry

    async def _list(self, provider_id: str, method: str, key: str, model: Type[T]) -> List[T]:
        if not self._registry.is_connected(provider_id):
            return []

        items: List[T] = []
        params: Dict[str, Any] = {}
        try:
            for _ in range(MAX_PAGES):
                result = await self._registry.request(provider_id, method, params)
                for raw in result.get(key) or []:
                    items.append(model.model_validate(raw))
                cursor = result.get("nextCursor")
                if not cursor:
                    break
                params = {"cursor": cursor}
        except Exception as exc:
            logger.debug("%s on %s degraded to empty: %s", method, provider_id, exc)
            return []
        return items

    async def list_tools(self, provider_id: str) -> List[Tool]:
        return await self._list(provider_id, "tools/list", "tools", Tool)

    async def list_prompts(self, provider_id: str) -> List[Prompt]:
        return await self._list(provider_id, "prompts/list", "prompts", Prompt)

    async def list_resources(self, provider_id: str) -> List[Resource]:
        return await self._list(provider_id, "resources/list", "resources", Resource)

    async def get_capabilities(self, provider_id: str) -> Capabilities:
        """Fetch all three lists concurrently."""
        tools, prompts, resources = await asyncio.gather(
            self.list_tools(provider_id),
            self.list_prompts(provider_id),
            self.list_resources(provider_id),
        )
        return Capabilities(tools=tools, prompts=prompts, resources=resources)

    async def collect_tools(self, provider_ids: Sequence[str]) -> List[ServerTool]:
        """
        Gather the tools of several providers, tagged with provider id and name.

        Order follows ``provider_ids``, then each provider's own order.
        """
        results = await asyncio.gather(*(self.list_tools(pid) for pid in provider_ids))
        return [
            ServerTool(server_id=pid, server_name=self._registry.provider_name(pid), tool=tool)
            for pid, tools in zip(provider_ids, results)
            for tool in tools
        ]
