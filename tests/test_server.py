"""Tests for MCP server module."""

import gc
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import mcp_epicme.server as server_module
from mcp_epicme.server import authorize, build_session
from mcp_epicme.store import JournalStore

from conftest import FakePeer, RecordingEmailSender

requires_mcp = pytest.mark.skipif(not server_module.HAS_MCP, reason="MCP not installed")


class TestServerImports:
    """Test server module imports and HAS_MCP flag."""

    def test_server_imports_without_mcp(self):
        assert hasattr(server_module, "HAS_MCP")
        assert hasattr(server_module, "create_server")
        assert hasattr(server_module, "run_server")
        assert hasattr(server_module, "main")

    def test_create_server_without_mcp_raises(self, config):
        if not server_module.HAS_MCP:
            with pytest.raises(ImportError, match="MCP package not installed"):
                server_module.create_server(config)


class TestBuildSession:
    """Tests for session wiring."""

    @pytest.mark.asyncio
    async def test_wires_catalog_and_grant(self, config, store):
        grant_id = store.create_unclaimed_grant("candidate")
        config.grant_id = grant_id
        session = build_session(config, FakePeer(), store, RecordingEmailSender())

        assert session.grant_id == grant_id
        assert "authenticate" in session.gate.enabled_of_kind("tool")
        assert session.gate.enabled_of_kind("prompt") == ["suggest_tags", "summarize_journal_entries"]
        assert session.gate.enabled_of_kind("resource") == ["credits", "user", "tags", "entry", "tag"]
        assert (await session.load()).user_id is None

    def test_default_sender_from_config(self, config, store):
        session = build_session(config, FakePeer(), store)
        assert session.bridge.email_sender.outbox_dir == config.get_outbox_path()


class TestAuthorize:
    def test_creates_unclaimed_grant(self, config):
        grant_id = authorize(config)

        store = JournalStore(config.get_database_path())
        try:
            grant = store.get_grant(grant_id)
            assert grant is not None
            assert not grant.is_claimed
        finally:
            store.close()


class TestMain:
    """Tests for main entry point."""

    def test_main_init_mode(self, temp_project, capsys):
        test_args = ["mcp-epicme", "--project-root", str(temp_project), "--init"]
        with patch.object(sys, "argv", test_args):
            server_module.main()

        assert (temp_project / ".epicme" / "epicme.db").exists()
        assert "Initialized" in capsys.readouterr().out

    def test_main_authorize(self, temp_project, capsys):
        test_args = ["mcp-epicme", "--project-root", str(temp_project), "--authorize"]
        with patch.object(sys, "argv", test_args):
            server_module.main()

        grant_id = capsys.readouterr().out.strip()
        store = JournalStore(temp_project / ".epicme" / "epicme.db")
        try:
            assert store.get_grant(grant_id) is not None
        finally:
            store.close()

    def test_main_config_load_error(self, temp_project):
        (temp_project / "epicme_config.toml").write_text("invalid toml [[[")

        test_args = ["mcp-epicme", "--project-root", str(temp_project)]
        with patch.object(sys, "argv", test_args):
            with pytest.raises(SystemExit) as exc_info:
                server_module.main()
            assert exc_info.value.code == 1

    def test_main_without_mcp_exits(self, temp_project):
        if not server_module.HAS_MCP:
            test_args = ["mcp-epicme", "--project-root", str(temp_project)]
            with patch.object(sys, "argv", test_args):
                with pytest.raises(SystemExit) as exc_info:
                    server_module.main()
                assert exc_info.value.code == 1

    @requires_mcp
    def test_main_runs_server_with_grant(self, temp_project):
        test_args = ["mcp-epicme", "--project-root", str(temp_project), "--grant", "g-1"]
        with patch.object(sys, "argv", test_args):
            with patch.object(server_module, "run_server", new=MagicMock()) as run_server:
                with patch.object(server_module.asyncio, "run") as run:
                    server_module.main()

        config = run_server.call_args.args[0]
        assert config.grant_id == "g-1"
        run.assert_called_once()


def make_mcp_session(sampling=True, elicitation=True):
    capabilities = SimpleNamespace(
        sampling=object() if sampling else None,
        elicitation=object() if elicitation else None,
    )
    session = MagicMock()
    session.client_params = SimpleNamespace(capabilities=capabilities)
    session.create_message = AsyncMock()
    session.elicit = AsyncMock()
    session.send_log_message = AsyncMock()
    session.send_tool_list_changed = AsyncMock()
    session.send_prompt_list_changed = AsyncMock()
    session.send_resource_list_changed = AsyncMock()
    return session


@requires_mcp
class TestMcpPeer:
    """Tests for the ServerSession adapter."""

    def test_capabilities(self):
        session = make_mcp_session(sampling=True, elicitation=False)
        peer = server_module.McpPeer(session)
        caps = peer.capabilities()
        assert caps.sampling is True
        assert caps.elicitation is False

    def test_capabilities_before_initialize(self):
        session = make_mcp_session()
        session.client_params = None
        caps = server_module.McpPeer(session).capabilities()
        assert not caps.sampling and not caps.elicitation

    @pytest.mark.asyncio
    async def test_create_message(self):
        from mcp import types

        session = make_mcp_session()
        session.create_message.return_value = SimpleNamespace(
            content=types.TextContent(type="text", text="[]")
        )
        peer = server_module.McpPeer(session)

        text = await peer.create_message(
            "system", [{"role": "user", "content": {"type": "text", "text": "hi"}}], 100
        )

        assert text == "[]"
        kwargs = session.create_message.call_args.kwargs
        assert kwargs["max_tokens"] == 100
        assert kwargs["system_prompt"] == "system"
        assert kwargs["messages"][0].content.text == "hi"

    @pytest.mark.asyncio
    async def test_create_message_non_text(self):
        from mcp_epicme.errors import SuggestionParseFailure

        session = make_mcp_session()
        session.create_message.return_value = SimpleNamespace(content=SimpleNamespace(type="image"))

        with pytest.raises(SuggestionParseFailure):
            await server_module.McpPeer(session).create_message("s", [], 10)

    @pytest.mark.asyncio
    async def test_elicit(self):
        session = make_mcp_session()
        session.elicit.return_value = SimpleNamespace(action="accept", content={"confirmed": True})

        response = await server_module.McpPeer(session).elicit("Sure?", {"type": "object"})
        assert response.accepted
        assert response.content == {"confirmed": True}
        assert session.elicit.call_args.kwargs["requestedSchema"] == {"type": "object"}

    @pytest.mark.asyncio
    async def test_notifications(self):
        session = make_mcp_session()
        peer = server_module.McpPeer(session)

        await peer.send_log("info", {"message": "hi"})
        await peer.send_list_changed()

        session.send_log_message.assert_awaited_once_with(level="info", data={"message": "hi"}, logger="epicme")
        session.send_tool_list_changed.assert_awaited_once()
        session.send_prompt_list_changed.assert_awaited_once()
        session.send_resource_list_changed.assert_awaited_once()

    def test_session_held_weakly(self):
        session = make_mcp_session()
        peer = server_module.McpPeer(session)
        assert peer.session is session

        del session
        gc.collect()
        with pytest.raises(RuntimeError, match="closed"):
            peer.capabilities()


@requires_mcp
class TestCreateServer:
    """Tests for create_server."""

    def test_registers_handlers(self, config, store):
        from mcp import types

        server = server_module.create_server(config, store)

        for request_type in (
            types.ListToolsRequest,
            types.CallToolRequest,
            types.ListPromptsRequest,
            types.GetPromptRequest,
            types.SetLevelRequest,
            types.ListResourcesRequest,
            types.ListResourceTemplatesRequest,
            types.ReadResourceRequest,
            types.CompleteRequest,
        ):
            assert request_type in server.request_handlers

    @pytest.mark.asyncio
    async def test_journal_session_dropped_with_mcp_session(self, config, store):
        from mcp import types
        from mcp.server.lowlevel.server import request_ctx
        from mcp.shared.context import RequestContext

        server = server_module.create_server(config, store, RecordingEmailSender())
        list_tools = server.request_handlers[types.ListToolsRequest]

        mcp_session = make_mcp_session()
        token = request_ctx.set(
            RequestContext(request_id=1, meta=None, session=mcp_session, lifespan_context=None)
        )
        try:
            await list_tools(types.ListToolsRequest(method="tools/list"))
            await list_tools(types.ListToolsRequest(method="tools/list"))
        finally:
            request_ctx.reset(token)

        assert len(server.journal_sessions) == 1
        del mcp_session
        gc.collect()
        assert len(server.journal_sessions) == 0


@requires_mcp
class TestRunServer:
    @pytest.mark.asyncio
    async def test_shutdown_closes_sender_and_store(self, config):
        from contextlib import asynccontextmanager

        from mcp_epicme.session import BackgroundTasks

        @asynccontextmanager
        async def fake_stdio():
            yield (object(), object())

        sender = RecordingEmailSender()
        sender.aclose = AsyncMock()
        server = MagicMock()
        server.run = AsyncMock()
        server.journal_tasks = BackgroundTasks()

        with patch.object(server_module, "stdio_server", fake_stdio), \
                patch.object(server_module, "make_email_sender", return_value=sender), \
                patch.object(server_module, "create_server", return_value=server) as create:
            await server_module.run_server(config)

        store = create.call_args.args[1]
        assert create.call_args.args[2] is sender
        server.run.assert_awaited_once()
        sender.aclose.assert_awaited_once()
        assert store._connection is None
