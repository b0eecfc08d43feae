"""
Flat function identifiers for MCP tools.

The model's function-calling protocol only accepts names made of letters,
digits, ``_ . - :`` that do not start with a digit. Each provider in a batch
gets a positional index and every tool is presented as::

    mcp{index}__{sanitized tool name}     e.g. mcp0__read_file, mcp1__search

The ``ToolMapping`` built alongside the declarations turns those names back
into (provider id, provider name, original tool name). Indices are
positional, so a mapping is only valid for the request that built it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from toolbridge.mcp.schema import Tool

FUNCTION_PREFIX = "mcp"
SEPARATOR = "__"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_.\-:]")


def sanitize_tool_name(name: str) -> str:
    """Replace every character outside the safe set with ``_``."""
    return _UNSAFE_CHARS.sub("_", name)


@dataclass(frozen=True)
class ServerTool:
    """A tool tagged with the provider that offers it."""

    server_id: str
    server_name: str
    tool: Tool


@dataclass(frozen=True)
class ToolTarget:
    """Where a flat function identifier points."""

    server_id: str
    server_name: str
    tool_name: str


@dataclass
class FunctionDeclaration:
    name: str
    description: str
    parameters: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        decl: Dict[str, Any] = {"name": self.name, "description": self.description}
        if self.parameters is not None:
            decl["parameters"] = self.parameters
        return decl


@dataclass
class ToolMapping:
    """Per-request table: flat function identifier -> ToolTarget."""

    by_function_name: Dict[str, ToolTarget] = field(default_factory=dict)

    def resolve(self, function_name: str) -> Optional[ToolTarget]:
        return self.by_function_name.get(function_name)

    def __len__(self) -> int:
        return len(self.by_function_name)

    def __contains__(self, function_name: str) -> bool:
        return function_name in self.by_function_name


def _normalize_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    normalized = dict(schema)
    if not normalized.get("type"):
        normalized["type"] = "object"
    return normalized


def to_function_declarations(
    server_tools: Iterable[ServerTool],
) -> Tuple[List[FunctionDeclaration], ToolMapping]:
    """
    Convert tagged MCP tools into function declarations plus the reverse mapping.

    Provider indices are assigned in first-seen order. Two different tool
    names of one provider that sanitize to the same text get a numeric
    suffix (``_2``, ``_3``...) so identifiers stay unique and invertible.
    A repeated (provider, tool) pair is declared once.
    """
    server_tools = list(server_tools)
    mapping = ToolMapping()
    declarations: List[FunctionDeclaration] = []

    index_by_server: Dict[str, int] = {}
    for t in server_tools:
        if t.server_id not in index_by_server:
            index_by_server[t.server_id] = len(index_by_server)

    seen: Dict[Tuple[str, str], str] = {}
    for t in server_tools:
        key = (t.server_id, t.tool.name)
        if key in seen:
            continue

        base = f"{FUNCTION_PREFIX}{index_by_server[t.server_id]}{SEPARATOR}{sanitize_tool_name(t.tool.name)}"
        function_name = base
        suffix = 2
        while function_name in mapping:
            function_name = f"{base}_{suffix}"
            suffix += 1
        seen[key] = function_name

        mapping.by_function_name[function_name] = ToolTarget(
            server_id=t.server_id,
            server_name=t.server_name,
            tool_name=t.tool.name,
        )
        declarations.append(FunctionDeclaration(
            name=function_name,
            description=t.tool.description or f"MCP tool: {t.tool.name}",
            parameters=_normalize_schema(t.tool.input_schema) if t.tool.input_schema is not None else None,
        ))

    return declarations, mapping
