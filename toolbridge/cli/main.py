"""
ToolBridge CLI - Chat with a model that can call MCP tools.

Providers are read from ~/.toolbridge/config.yaml and .toolbridge/config.yaml.
Every tool call the model asks for is shown for approval before it runs.
"""

import asyncio
import json
import logging
import sys
from typing import Any, List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from toolbridge import __version__
from toolbridge.core.bridge import ToolBridge
from toolbridge.core.conversation import Message, ToolCall, ToolCallStatus
from toolbridge.core.events import ERROR, TEXT, TOOL_CALL
from toolbridge.mcp.registry import NotConnectedError
from toolbridge.validation.config import Config, ConfigError, ProviderConfig

console = Console()

EXIT_COMMANDS = {"/exit", "/quit", "exit", "quit"}


def _setup_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load_config() -> Config:
    try:
        config = Config.load()
        config.merged
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)
    return config


def _describe(server: ProviderConfig) -> str:
    if server.transport == "stdio":
        return " ".join([server.command or ""] + server.args)
    return server.url or ""


async def _connect_all(bridge: ToolBridge, servers: List[ProviderConfig]) -> List[str]:
    """Connect providers concurrently; returns the ids that came up."""
    results = await asyncio.gather(*(bridge.connect(s) for s in servers))
    connected = []
    for server, result in zip(servers, results):
        if result["status"] == "connected":
            console.print(f"[green]✓[/green] {server.display_name}")
            connected.append(server.id)
        else:
            console.print(f"[red]✗[/red] {server.display_name}: {result.get('error', result['status'])}")
    return connected


# ── servers ─────────────────────────────────────────────────────────────


async def _servers(config: Config, check: bool) -> None:
    servers = config.get_servers()
    if not servers:
        console.print("[dim]No providers configured. Add one to .toolbridge/config.yaml:[/dim]")
        console.print("[dim]  servers:[/dim]")
        console.print("[dim]    filesystem:[/dim]")
        console.print('[dim]      transport: "stdio"[/dim]')
        console.print('[dim]      command: "npx"[/dim]')
        console.print('[dim]      args: ["-y", "@modelcontextprotocol/server-filesystem", "."][/dim]')
        return

    statuses = {}
    if check:
        bridge = ToolBridge.from_config(config)
        async with bridge:
            enabled = [s for s in servers if s.enabled]
            for server, result in zip(enabled, await asyncio.gather(*(bridge.connect(s) for s in enabled))):
                statuses[server.id] = result

    table = Table(title="Tool providers")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Transport")
    table.add_column("Target", style="dim")
    table.add_column("Status")
    for server in servers:
        if not server.enabled:
            status = "[dim]disabled[/dim]"
        elif server.id in statuses:
            result = statuses[server.id]
            if result["status"] == "connected":
                status = "[green]connected[/green]"
            else:
                status = f"[red]{result['status']}[/red] {result.get('error', '')}"
        else:
            status = "[dim]-[/dim]"
        table.add_row(server.id, server.display_name, server.transport, _describe(server), status)
    console.print(table)


# ── capabilities ────────────────────────────────────────────────────────


async def _capabilities(config: Config, server_id: str) -> None:
    server = config.get_server(server_id)
    if server is None:
        console.print(f"[red]Unknown provider: {server_id}[/red]")
        sys.exit(1)

    bridge = ToolBridge.from_config(config)
    async with bridge:
        result = await bridge.connect(server)
        if result["status"] != "connected":
            console.print(f"[red]Could not connect: {result.get('error', result['status'])}[/red]")
            sys.exit(1)
        try:
            caps = await bridge.get_capabilities(server.id)
        except NotConnectedError as e:
            console.print(f"[red]{e}[/red]")
            sys.exit(1)

    console.print(f"[bold]Tools ({len(caps['tools'])}):[/bold]")
    for tool in caps["tools"]:
        console.print(f"  [cyan]{tool['name']}[/cyan] {tool.get('description', '')}")
    console.print(f"[bold]Prompts ({len(caps['prompts'])}):[/bold]")
    for prompt in caps["prompts"]:
        console.print(f"  [cyan]{prompt['name']}[/cyan] {prompt.get('description', '')}")
    console.print(f"[bold]Resources ({len(caps['resources'])}):[/bold]")
    for resource in caps["resources"]:
        console.print(f"  [cyan]{resource['uri']}[/cyan] {resource.get('name', '')}")


# ── chat ────────────────────────────────────────────────────────────────


async def _stream_round(bridge: ToolBridge, messages: List[Message], provider_ids: List[str]) -> Optional[Message]:
    """Stream one round to the console; returns the assistant message, or None on error."""
    session = bridge.new_session()
    printed = 0
    async for event in session.run(messages, provider_ids):
        if event.event == TEXT:
            chunk = event.data["chunk"]
            console.print(chunk[printed:], end="", markup=False, highlight=False)
            printed = len(chunk)
        elif event.event == TOOL_CALL:
            if printed:
                console.print()
                printed = 0
            console.print(Panel(
                json.dumps(event.data["args"], indent=2, ensure_ascii=False),
                title=f"{event.data['serverName'] or '?'} · {event.data['name']}",
                border_style="yellow",
            ))
        elif event.event == ERROR:
            console.print(f"\n[red]Error: {event.data['message']}[/red]")
            return None
    if printed:
        console.print()
    return session.response()


async def _review(bridge: ToolBridge, calls: List[ToolCall]) -> bool:
    """Ask about every pending call; returns True if any call ran."""
    ran = False
    for call in calls:
        question = f"Run [cyan]{call.name}[/cyan] on {call.server_name or call.server_id or '?'}?"
        approved = await asyncio.to_thread(Confirm.ask, question, default=True)
        if not approved:
            call.reject()
            console.print("[dim]Rejected[/dim]")
            continue
        with console.status(f"[bold blue]Running {call.name}...[/bold blue]"):
            await bridge.run_tool_call(call)
        ran = True
        style = "green" if call.status is ToolCallStatus.COMPLETED else "red"
        shown: Any = call.result if call.result is not None else call.error
        if not isinstance(shown, str):
            shown = json.dumps(shown, indent=2, ensure_ascii=False)
        console.print(Panel(shown, title=f"{call.name} · {call.status.value}", border_style=style))
    return ran


async def _chat(config: Config, only: List[str]) -> None:
    servers = config.get_servers(enabled_only=True)
    if only:
        servers = [s for s in servers if s.id in only]

    bridge = ToolBridge.from_config(config)
    async with bridge:
        provider_ids = await _connect_all(bridge, servers)
        console.print(f"[dim]Model: {config.get_model_name()} · /exit to quit[/dim]\n")

        messages: List[Message] = []
        while True:
            try:
                text = await asyncio.to_thread(Prompt.ask, "[bold green]You[/bold green]")
            except (EOFError, KeyboardInterrupt):
                break
            text = text.strip()
            if not text:
                continue
            if text in EXIT_COMMANDS:
                break

            messages.append(Message.user(text))
            while True:
                reply = await _stream_round(bridge, messages, provider_ids)
                if reply is None:
                    break
                messages.append(reply)
                if not await _review(bridge, reply.pending_tool_calls()):
                    break


# ── entry point ─────────────────────────────────────────────────────────


@click.group()
@click.version_option(__version__, "--version", "-V", prog_name="ToolBridge")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def cli(verbose: bool) -> None:
    """
    ToolBridge - chat with a model that can call MCP tools.

    \b
    Examples:
        toolbridge servers              # List configured providers
        toolbridge capabilities fs      # Show what a provider offers
        toolbridge chat                 # Start interactive chat
    """
    _setup_logging(verbose)


@cli.command()
@click.option("--check/--no-check", default=True, help="Connect to report live status")
def servers(check: bool) -> None:
    """List configured tool providers."""
    asyncio.run(_servers(_load_config(), check))


@cli.command()
@click.argument("server_id")
def capabilities(server_id: str) -> None:
    """Connect to a provider and list its tools, prompts and resources."""
    asyncio.run(_capabilities(_load_config(), server_id))


@cli.command()
@click.option("--server", "-s", "only", multiple=True, help="Only use these provider ids")
def chat(only: tuple) -> None:
    """Start an interactive chat."""
    try:
        asyncio.run(_chat(_load_config(), list(only)))
    except KeyboardInterrupt:
        console.print("\n[dim]Bye[/dim]")


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
