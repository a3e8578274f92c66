"""Tests for MCP tool definitions and execution."""

import json

import pytest

from mcp_epicme.availability import Audience
from mcp_epicme.host import ElicitResponse
from mcp_epicme.session import JournalSession
from mcp_epicme.tools import AUTHENTICATE_SUGGESTION, execute_tool, make_tools

from conftest import FakePeer, RecordingEmailSender


class TestMakeTools:
    """Tests for make_tools function."""

    def test_make_tools_returns_all_tools(self):
        tools = make_tools()

        expected_tools = [
            "get_logging_level",
            "authenticate",
            "validate_token",
            "whoami",
            "logout",
            "create_entry",
            "get_entry",
            "list_entries",
            "update_entry",
            "delete_entry",
            "create_tag",
            "get_tag",
            "list_tags",
            "update_tag",
            "delete_tag",
            "add_tag_to_entry",
            "get_tag_suggestions_instructions",
            "get_journal_insights_instructions",
        ]
        assert list(tools) == expected_tools

    def test_tool_has_required_fields(self):
        for name, tool in make_tools().items():
            assert tool["name"] == name
            assert tool["description"]
            assert isinstance(tool["audience"], Audience)
            assert tool["inputSchema"]["type"] == "object"

    def test_auth_tools_audience(self):
        tools = make_tools()
        assert tools["authenticate"]["audience"] is Audience.UNAUTHENTICATED
        assert tools["validate_token"]["audience"] is Audience.UNAUTHENTICATED
        assert tools["logout"]["audience"] is Audience.AUTHENTICATED

    def test_create_entry_schema(self):
        schema = make_tools()["create_entry"]["inputSchema"]
        assert schema["required"] == ["title", "content"]
        assert schema["properties"]["tags"]["items"]["type"] == "integer"


class TestAuthTools:
    """Tests for authenticate, validate_token, whoami and logout."""

    @pytest.mark.asyncio
    async def test_authenticate_rejects_malformed_email(self, session, email_sender, store):
        result = await execute_tool(session, "authenticate", {"email": "not-an-email"})

        assert result["success"] is False
        assert result["error_type"] == "invalid_email"
        assert email_sender.sent == []
        assert store.get_user_by_email("not-an-email") is None

    @pytest.mark.asyncio
    async def test_full_flow(self, session, email_sender):
        result = await execute_tool(session, "authenticate", {"email": " a@b.com "})
        assert result["success"] is True
        assert "a@b.com" in result["message"]
        assert email_sender.sent[0].to == "a@b.com"

        result = await execute_tool(session, "validate_token", {"validationToken": "000000"})
        assert result["success"] is False
        assert result["error_type"] == "invalid_token"

        result = await execute_tool(session, "validate_token", {"validationToken": email_sender.last_code})
        assert result["success"] is True
        assert result["user"]["email"] == "a@b.com"

        result = await execute_tool(session, "whoami", {})
        assert result["user"]["email"] == "a@b.com"

        result = await execute_tool(session, "logout", {})
        assert result == {"success": True, "message": "Logout successful"}

        result = await execute_tool(session, "whoami", {})
        assert result["error_type"] == "grant_not_claimed"
        assert result["suggestion"] == AUTHENTICATE_SUGGESTION

    @pytest.mark.asyncio
    async def test_logout_is_idempotent(self, session, user):
        first = await execute_tool(session, "logout", {})
        second = await execute_tool(session, "logout", {})
        assert first == second == {"success": True, "message": "Logout successful"}

    @pytest.mark.asyncio
    async def test_validate_without_token(self, session):
        result = await execute_tool(session, "validate_token", {"validationToken": "123456"})
        assert result["error_type"] == "token_not_found"
        assert "authenticate" in result["suggestion"]

    @pytest.mark.asyncio
    async def test_email_failure(self, grant_id, store, config, peer):
        from mcp_epicme.auth import AuthBridge
        from mcp_epicme.errors import EmailDispatchFailure

        bridge = AuthBridge(store, RecordingEmailSender(fail=EmailDispatchFailure("smtp down")), config)
        session = JournalSession(grant_id, store, bridge, peer, config=config)

        result = await execute_tool(session, "authenticate", {"email": "a@b.com"})
        assert result["success"] is False
        assert result["error_type"] == "email_dispatch_failure"

    @pytest.mark.asyncio
    async def test_no_grant(self, store, bridge, peer, config):
        session = JournalSession(None, store, bridge, peer, config=config)
        result = await execute_tool(session, "list_tags", {})
        assert result["error_type"] == "unauthenticated"
        assert result["suggestion"] == AUTHENTICATE_SUGGESTION

    @pytest.mark.asyncio
    async def test_unknown_grant(self, store, bridge, peer, config):
        session = JournalSession("stale-grant", store, bridge, peer, config=config)
        result = await execute_tool(session, "whoami", {})
        assert result["error_type"] == "grant_not_found"

    @pytest.mark.asyncio
    async def test_get_logging_level(self, session):
        await session.set_logging_level("warning")
        result = await execute_tool(session, "get_logging_level", {})
        assert result == {"success": True, "logging_level": "warning"}


class TestEntryTools:
    """Tests for entry tools."""

    @pytest.mark.asyncio
    async def test_create_entry(self, session, user, store):
        tag = store.create_tag(user.id, "travel")
        result = await execute_tool(session, "create_entry", {
            "title": "Trip to Japan",
            "content": "Kyoto",
            "mood": "happy",
            "tags": [tag.id],
        })
        await session.tasks.drain()

        assert result["success"] is True
        entry = result["entry"]
        assert entry["title"] == "Trip to Japan"
        assert entry["mood"] == "happy"
        assert entry["tags"] == [{"id": tag.id, "name": "travel"}]

    @pytest.mark.asyncio
    async def test_create_entry_requires_auth(self, session, store):
        result = await execute_tool(session, "create_entry", {"title": "t", "content": "c"})
        assert result["error_type"] == "grant_not_claimed"
        assert store.get_user_by_email("a@b.com") is None

    @pytest.mark.asyncio
    async def test_create_entry_unknown_tag_is_not_saved(self, session, user, store):
        result = await execute_tool(session, "create_entry", {"title": "T", "content": "C", "tags": [999]})
        await session.tasks.drain()

        assert result["success"] is False
        assert result["error_type"] == "not_found"
        assert store.get_entries(user.id) == []

    @pytest.mark.asyncio
    async def test_create_entry_missing_content(self, session, user):
        result = await execute_tool(session, "create_entry", {"title": "t"})
        assert result["success"] is False
        assert result["error_type"] == "epicme_error"

    @pytest.mark.asyncio
    async def test_create_entry_returns_before_suggestions(self, grant_id, store, bridge, config, user):
        travel = store.create_tag(user.id, "travel")
        peer = FakePeer(
            sampling=True,
            reply=json.dumps([{"id": travel.id, "confidence": 0.9, "reasoning": "r"}]),
        )
        session = JournalSession(grant_id, store, bridge, peer, config=config)

        result = await execute_tool(session, "create_entry", {"title": "Trip", "content": "..."})
        assert result["entry"]["tags"] == []

        await session.tasks.drain()
        entry = await execute_tool(session, "get_entry", {"id": result["entry"]["id"]})
        assert entry["entry"]["tags"] == [{"id": travel.id, "name": "travel"}]

    @pytest.mark.asyncio
    async def test_create_entry_survives_bad_suggestions(self, grant_id, store, bridge, config, user):
        peer = FakePeer(sampling=True, reply="not json at all")
        session = JournalSession(grant_id, store, bridge, peer, config=config)

        result = await execute_tool(session, "create_entry", {"title": "Trip", "content": "..."})
        await session.tasks.drain()
        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_get_list_update(self, session, user):
        created = await execute_tool(session, "create_entry", {"title": "Day", "content": "Fine"})
        entry_id = created["entry"]["id"]

        result = await execute_tool(session, "get_entry", {"id": entry_id})
        assert result["entry"]["content"] == "Fine"

        result = await execute_tool(session, "list_entries", {})
        assert result["count"] == 1
        assert result["entries"][0]["title"] == "Day"

        result = await execute_tool(session, "update_entry", {"id": entry_id, "title": "Better day"})
        assert result["entry"]["title"] == "Better day"
        assert result["entry"]["content"] == "Fine"
        await session.tasks.drain()

    @pytest.mark.asyncio
    async def test_get_missing_entry(self, session, user):
        result = await execute_tool(session, "get_entry", {"id": 42})
        assert result["error_type"] == "not_found"

    @pytest.mark.asyncio
    async def test_missing_argument(self, session, user):
        result = await execute_tool(session, "get_entry", {})
        assert result["error_type"] == "invalid_arguments"
        assert "id" in result["error"]

    @pytest.mark.asyncio
    async def test_delete_without_elicitation(self, session, user, store):
        entry = store.create_entry(user.id, {"title": "Day", "content": "Fine"})
        result = await execute_tool(session, "delete_entry", {"id": entry.id})
        assert result["success"] is True
        assert store.get_entry(user.id, entry.id) is None

    @pytest.mark.asyncio
    async def test_delete_declined(self, grant_id, store, bridge, config, user):
        peer = FakePeer(elicitation=True, elicit_response=ElicitResponse(action="decline"))
        session = JournalSession(grant_id, store, bridge, peer, config=config)
        entry = store.create_entry(user.id, {"title": "Day", "content": "Fine"})

        result = await execute_tool(session, "delete_entry", {"id": entry.id})
        assert result == {"success": False, "message": "Entry deletion cancelled"}
        assert store.get_entry(user.id, entry.id) is not None

    @pytest.mark.asyncio
    async def test_delete_confirmed(self, grant_id, store, bridge, config, user):
        peer = FakePeer(
            elicitation=True,
            elicit_response=ElicitResponse(action="accept", content={"confirmed": True}),
        )
        session = JournalSession(grant_id, store, bridge, peer, config=config)
        entry = store.create_entry(user.id, {"title": "Day", "content": "Fine"})

        result = await execute_tool(session, "delete_entry", {"id": entry.id})
        assert result["success"] is True
        assert peer.elicitations[0]["schema"]["properties"]["confirmed"]["type"] == "boolean"


class TestTagTools:
    """Tests for tag tools."""

    @pytest.mark.asyncio
    async def test_crud(self, session, user):
        result = await execute_tool(session, "create_tag", {"name": "travel", "description": "Trips"})
        tag_id = result["tag"]["id"]

        assert (await execute_tool(session, "get_tag", {"id": tag_id}))["tag"]["name"] == "travel"
        assert (await execute_tool(session, "list_tags", {}))["count"] == 1

        result = await execute_tool(session, "update_tag", {"id": tag_id, "name": "trips"})
        assert result["tag"]["name"] == "trips"
        assert result["tag"]["description"] == "Trips"

        result = await execute_tool(session, "delete_tag", {"id": tag_id})
        assert result["success"] is True
        assert (await execute_tool(session, "get_tag", {"id": tag_id}))["error_type"] == "not_found"

    @pytest.mark.asyncio
    async def test_duplicate_tag(self, session, user):
        await execute_tool(session, "create_tag", {"name": "travel"})
        result = await execute_tool(session, "create_tag", {"name": "travel"})
        assert result["error_type"] == "duplicate_tag"

    @pytest.mark.asyncio
    async def test_delete_tag_rejected(self, grant_id, store, bridge, config, user):
        peer = FakePeer(elicitation=True, elicit_response=ElicitResponse(action="accept", content={"confirmed": False}))
        session = JournalSession(grant_id, store, bridge, peer, config=config)
        tag = store.create_tag(user.id, "travel")

        result = await execute_tool(session, "delete_tag", {"id": tag.id})
        assert result["success"] is False
        assert "rejected" in result["message"]
        assert store.get_tag(user.id, tag.id) is not None

    @pytest.mark.asyncio
    async def test_add_tag_to_entry(self, session, user, store):
        tag = store.create_tag(user.id, "travel")
        entry = store.create_entry(user.id, {"title": "Trip", "content": "..."})

        result = await execute_tool(session, "add_tag_to_entry", {"entry_id": entry.id, "tag_id": tag.id})
        assert result["success"] is True
        assert result["entry_tag"]["tag_id"] == tag.id

        again = await execute_tool(session, "add_tag_to_entry", {"entry_id": entry.id, "tag_id": tag.id})
        assert again["entry_tag"]["id"] == result["entry_tag"]["id"]

    @pytest.mark.asyncio
    async def test_add_foreign_tag(self, session, user, store):
        other = store.get_or_create_user("other@b.com")
        tag = store.create_tag(other.id, "theirs")
        entry = store.create_entry(user.id, {"title": "Trip", "content": "..."})

        result = await execute_tool(session, "add_tag_to_entry", {"entry_id": entry.id, "tag_id": tag.id})
        assert result["error_type"] == "not_found"


class TestInstructionTools:
    """Tests for the tools that hand back prompt text."""

    @pytest.mark.asyncio
    async def test_tag_suggestions_instructions(self, session, user, store):
        store.create_tag(user.id, "travel")
        entry = store.create_entry(user.id, {"title": "Trip to Japan", "content": "Kyoto"})

        result = await execute_tool(session, "get_tag_suggestions_instructions", {"entryId": entry.id})

        assert result["success"] is True
        messages = result["messages"]
        assert "add_tag_to_entry" in messages[0]["content"]["text"]
        assert [m["content"]["resource"]["uri"] for m in messages[1:]] == [
            "epicme://tags",
            f"epicme://entries/{entry.id}",
        ]

    @pytest.mark.asyncio
    async def test_tag_suggestions_instructions_missing_entry(self, session, user):
        result = await execute_tool(session, "get_tag_suggestions_instructions", {"entryId": 404})
        assert result["error_type"] == "not_found"

    @pytest.mark.asyncio
    async def test_journal_insights_instructions(self, session, user, store):
        travel = store.create_tag(user.id, "travel")
        trip = store.create_entry(user.id, {"title": "Trip", "content": "..."}, [travel.id])
        store.create_entry(user.id, {"title": "Home", "content": "..."})

        result = await execute_tool(session, "get_journal_insights_instructions", {"tagIds": [travel.id]})

        text = result["messages"][0]["content"]["text"]
        assert f'"Trip" (ID: {trip.id}) - 1 tags' in text
        assert "Home" not in text

    @pytest.mark.asyncio
    async def test_journal_insights_instructions_empty(self, session, user):
        result = await execute_tool(session, "get_journal_insights_instructions", {})
        assert result["messages"][0]["role"] == "assistant"

    @pytest.mark.asyncio
    async def test_instructions_require_auth(self, session):
        result = await execute_tool(session, "get_journal_insights_instructions", {})
        assert result["error_type"] == "grant_not_claimed"


class TestDispatch:
    """Tests for unknown and unavailable tools."""

    @pytest.mark.asyncio
    async def test_unknown_tool(self, session):
        result = await execute_tool(session, "no_such_tool", {})
        assert result["success"] is False
        assert "Unknown tool" in result["error"]

    @pytest.mark.asyncio
    async def test_unavailable_tool(self, grant_id, store, bridge, config):
        from mcp_epicme.prompts import make_operations as make_prompt_operations
        from mcp_epicme.tools import make_operations as make_tool_operations

        config.dynamic_capabilities = True
        session = JournalSession(
            grant_id, store, bridge, FakePeer(),
            config=config,
            catalog=make_tool_operations() + make_prompt_operations(),
        )
        await session.load()

        result = await execute_tool(session, "create_entry", {"title": "t", "content": "c"})
        assert result["error_type"] == "unavailable"
