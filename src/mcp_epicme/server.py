"""EpicMe MCP Server - Main entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
import weakref
from pathlib import Path
from typing import Any, Optional

# MCP imports are optional - only needed when running the server
try:
    from mcp import types  # pragma: no cover
    from mcp.server.lowlevel import NotificationOptions, Server  # pragma: no cover
    from mcp.server.lowlevel.helper_types import ReadResourceContents  # pragma: no cover
    from mcp.server.session import ServerSession  # pragma: no cover
    from mcp.server.stdio import stdio_server  # pragma: no cover
    HAS_MCP = True  # pragma: no cover
except ImportError:
    HAS_MCP = False
    types = None  # type: ignore
    Server = None  # type: ignore
    ServerSession = None  # type: ignore

from .auth import AuthBridge
from .config import ServerConfig, load_config
from .errors import SuggestionParseFailure
from .host import ElicitResponse, Peer, PeerCapabilities
from .mailer import EmailSender, make_email_sender
from .prompts import get_prompt, make_operations as make_prompt_operations, make_prompts
from .resources import (
    complete_id,
    list_resource_templates,
    list_resources,
    make_operations as make_resource_operations,
    read_resource,
)
from .session import BackgroundTasks, JournalSession
from .store import JournalStore
from .tools import execute_tool, make_operations as make_tool_operations, make_tools

logger = logging.getLogger(__name__)

INSTRUCTIONS = """
EpicMe: personal journaling server with AI-assisted organization.

## Authentication
Call `whoami` first. If unauthenticated: 1) `authenticate` with the user's email,
2) `validate_token` with the 6-digit code from that email.

## Core workflow
- Create: `create_entry` (tags may be suggested and applied automatically)
- Browse: `list_entries`, `get_entry`
- Organize: `list_tags`, `create_tag`, `add_tag_to_entry`
- Read: `epicme://entries/{id}`, `epicme://tags/{id}` and `epicme://tags` resources

## Best practices
- Check `list_tags` before creating new tags to avoid duplicates
- Use `list_entries` to find entry IDs before `get_entry`
""".strip()


class McpPeer:
    """Peer backed by an ``mcp`` ServerSession, held by weak reference."""

    def __init__(self, session: "ServerSession"):
        self._session_ref = weakref.ref(session)

    @property
    def session(self) -> "ServerSession":
        session = self._session_ref()
        if session is None:
            raise RuntimeError("MCP session has closed")
        return session

    def capabilities(self) -> PeerCapabilities:
        params = self.session.client_params
        caps = params.capabilities if params is not None else None
        if caps is None:
            return PeerCapabilities()
        return PeerCapabilities(
            sampling=caps.sampling is not None,
            elicitation=getattr(caps, "elicitation", None) is not None,
        )

    async def create_message(self, system_prompt: str, messages: list[dict[str, Any]], max_tokens: int) -> str:
        result = await self.session.create_message(
            messages=[
                types.SamplingMessage(
                    role=m["role"],
                    content=types.TextContent(type="text", text=m["content"]["text"]),
                )
                for m in messages
            ],
            max_tokens=max_tokens,
            system_prompt=system_prompt,
        )
        if not isinstance(result.content, types.TextContent):
            raise SuggestionParseFailure(f"Sampling returned {result.content.type} content, expected text")
        return result.content.text

    async def elicit(self, message: str, requested_schema: dict[str, Any]) -> ElicitResponse:
        result = await self.session.elicit(message=message, requestedSchema=requested_schema)
        return ElicitResponse(action=result.action, content=result.content)

    async def send_log(self, level: str, data: Any) -> None:
        await self.session.send_log_message(level=level, data=data, logger="epicme")

    async def send_list_changed(self) -> None:
        await self.session.send_tool_list_changed()
        await self.session.send_prompt_list_changed()
        await self.session.send_resource_list_changed()


def build_session(
    config: ServerConfig,
    peer: Peer,
    store: Optional[JournalStore] = None,
    email_sender: Optional[EmailSender] = None,
    tasks: Optional[BackgroundTasks] = None,
) -> JournalSession:
    """Wire a JournalSession for the grant configured on ``config``."""
    store = store or JournalStore(config.get_database_path())
    bridge = AuthBridge(store, email_sender or make_email_sender(config), config)
    return JournalSession(
        config.grant_id,
        store,
        bridge,
        peer,
        config=config,
        catalog=make_tool_operations() + make_prompt_operations() + make_resource_operations(),
        tasks=tasks,
    )


def _to_prompt_message(message: dict[str, Any]) -> "types.PromptMessage":
    content = message["content"]
    if content["type"] == "resource":
        res = content["resource"]
        payload = types.EmbeddedResource(
            type="resource",
            resource=types.TextResourceContents(uri=res["uri"], mimeType=res["mimeType"], text=res["text"]),
        )
    else:
        payload = types.TextContent(type="text", text=content["text"])
    return types.PromptMessage(role=message["role"], content=payload)


def create_server(
    config: ServerConfig,
    store: Optional[JournalStore] = None,
    email_sender: Optional[EmailSender] = None,
) -> "Server":
    """Create and configure the MCP server.

    Args:
        config: Server configuration
        store: Optional pre-opened store (defaults to the configured database)
        email_sender: Optional sender (defaults to the configured backend)

    Returns:
        Configured MCP Server instance

    Raises:
        ImportError: If MCP package is not installed
    """
    if not HAS_MCP:
        raise ImportError(
            "MCP package not installed. Install with: pip install mcp-epicme[mcp]"
        )

    server = Server("epicme", version="1.0.0", instructions=INSTRUCTIONS)
    store = store or JournalStore(config.get_database_path())
    email_sender = email_sender or make_email_sender(config)
    tasks = BackgroundTasks()
    tool_defs = make_tools()
    prompt_defs = make_prompts()
    # entries go away with their ServerSession
    sessions: "weakref.WeakKeyDictionary[ServerSession, JournalSession]" = weakref.WeakKeyDictionary()

    async def current_session() -> JournalSession:
        mcp_session = server.request_context.session
        journal = sessions.get(mcp_session)
        if journal is None:
            journal = build_session(config, McpPeer(mcp_session), store, email_sender, tasks)
            await journal.load()
            sessions[mcp_session] = journal
        return journal

    server.journal_tasks = tasks  # type: ignore[attr-defined]
    server.journal_sessions = sessions  # type: ignore[attr-defined]

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        """Return the tools enabled for this session."""
        journal = await current_session()
        return [
            types.Tool(
                name=tool_defs[name]["name"],
                description=tool_defs[name]["description"],
                inputSchema=tool_defs[name]["inputSchema"],
            )
            for name in journal.gate.enabled_of_kind("tool")
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
        """Handle tool invocation."""
        journal = await current_session()
        result = await execute_tool(journal, name, arguments or {})
        return [types.TextContent(type="text", text=json.dumps(result, indent=2, default=str))]

    @server.list_prompts()
    async def list_prompts() -> list[types.Prompt]:
        journal = await current_session()
        return [
            types.Prompt(
                name=name,
                description=prompt_defs[name]["description"],
                arguments=[types.PromptArgument(**arg) for arg in prompt_defs[name]["arguments"]],
            )
            for name in journal.gate.enabled_of_kind("prompt")
        ]

    @server.get_prompt()
    async def handle_get_prompt(name: str, arguments: Optional[dict[str, str]]) -> types.GetPromptResult:
        journal = await current_session()
        rendered = await get_prompt(journal, name, arguments or {})
        return types.GetPromptResult(
            description=rendered["description"],
            messages=[_to_prompt_message(m) for m in rendered["messages"]],
        )

    @server.set_logging_level()
    async def set_logging_level(level: types.LoggingLevel) -> None:
        journal = await current_session()
        await journal.set_logging_level(level)

    @server.list_resources()
    async def handle_list_resources() -> list[types.Resource]:
        journal = await current_session()
        return [types.Resource(**r) for r in list_resources(journal)]

    @server.list_resource_templates()
    async def handle_list_resource_templates() -> list[types.ResourceTemplate]:
        journal = await current_session()
        return [types.ResourceTemplate(**t) for t in list_resource_templates(journal)]

    @server.read_resource()
    async def handle_read_resource(uri: Any) -> list[ReadResourceContents]:
        journal = await current_session()
        text, mime_type = read_resource(journal, str(uri))
        return [ReadResourceContents(content=text, mime_type=mime_type)]

    @server.completion()
    async def handle_completion(ref: Any, argument: Any, context: Any) -> Optional[types.Completion]:
        """Complete record ids for the entry and tag templates."""
        uri_template = getattr(ref, "uri", None)
        if uri_template is None or argument.name != "id":
            return None
        journal = await current_session()
        values = complete_id(journal, str(uri_template), argument.value)
        return types.Completion(values=values[:100], total=len(values), hasMore=len(values) > 100)

    return server


async def run_server(config: ServerConfig) -> None:
    """Run the MCP server with stdio transport."""
    if not HAS_MCP:
        raise ImportError(
            "MCP package not installed. Install with: pip install mcp-epicme[mcp]"
        )

    store = JournalStore(config.get_database_path())
    email_sender = make_email_sender(config)
    server = create_server(config, store, email_sender)

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(
                    notification_options=NotificationOptions(
                        prompts_changed=True, resources_changed=True, tools_changed=True
                    ),
                ),
            )
    finally:
        await server.journal_tasks.cancel_all()
        aclose = getattr(email_sender, "aclose", None)
        if aclose is not None:
            await aclose()
        store.close()


def authorize(config: ServerConfig) -> str:
    """Issue an unclaimed grant, as the OAuth authorize endpoint would."""
    store = JournalStore(config.get_database_path())
    try:
        bridge = AuthBridge(store, make_email_sender(config), config)
        return bridge.create_unclaimed_grant(str(uuid.uuid4()))
    finally:
        store.close()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="EpicMe MCP Server - journaling with emailed-code authentication and AI tag suggestions"
    )
    parser.add_argument(
        "--project-root",
        "-p",
        type=Path,
        default=Path.cwd(),
        help="Directory holding the .epicme data directory (default: current directory)",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Path to config file (default: auto-detect in project root)",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Create the database and exit",
    )
    parser.add_argument(
        "--authorize",
        action="store_true",
        help="Issue a new unclaimed grant, print its id and exit",
    )
    parser.add_argument(
        "--grant",
        help="Grant id this server session is bound to (default: $EPICME_GRANT_ID)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level for stderr output (default: INFO)",
    )

    args = parser.parse_args()

    # stdout carries the protocol, so logs go to stderr
    logging.basicConfig(
        level=args.log_level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    project_root = args.project_root.resolve()

    try:
        config = load_config(project_root, args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    if args.grant:
        config.grant_id = args.grant

    if args.init:
        store = JournalStore(config.get_database_path())
        store.close()
        print(f"Initialized EpicMe database at {config.get_database_path()}")
        return

    if args.authorize:
        grant_id = authorize(config)
        print(grant_id)
        return

    # Check for MCP before running in server mode
    if not HAS_MCP:
        print("Error: MCP package not installed.", file=sys.stderr)
        print("Install with: pip install mcp-epicme[mcp]", file=sys.stderr)
        sys.exit(1)

    if not config.grant_id:
        logger.warning("No grant configured; every authenticated tool will fail until one is supplied")

    asyncio.run(run_server(config))


if __name__ == "__main__":  # pragma: no cover
    main()
