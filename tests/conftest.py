"""Shared pytest fixtures for mcp-epicme tests."""

import itertools
import tempfile
from pathlib import Path

import pytest

from mcp_epicme.auth import AuthBridge
from mcp_epicme.config import ServerConfig
from mcp_epicme.host import ElicitResponse, PeerCapabilities
from mcp_epicme.prompts import make_operations as make_prompt_operations
from mcp_epicme.resources import make_operations as make_resource_operations
from mcp_epicme.session import BackgroundTasks, JournalSession
from mcp_epicme.store import JournalStore
from mcp_epicme.tools import make_operations as make_tool_operations


class FakePeer:
    """In-memory stand-in for a connected MCP client."""

    def __init__(self, sampling=False, elicitation=False, reply="[]", elicit_response=None):
        self.caps = PeerCapabilities(sampling=sampling, elicitation=elicitation)
        self.reply = reply
        self.elicit_response = elicit_response or ElicitResponse(action="decline")
        self.sampling_requests = []
        self.elicitations = []
        self.logs = []
        self.list_changed = 0

    def capabilities(self):
        return self.caps

    async def create_message(self, system_prompt, messages, max_tokens):
        self.sampling_requests.append({
            "system_prompt": system_prompt,
            "messages": messages,
            "max_tokens": max_tokens,
        })
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply

    async def elicit(self, message, requested_schema):
        self.elicitations.append({"message": message, "schema": requested_schema})
        if isinstance(self.elicit_response, Exception):
            raise self.elicit_response
        return self.elicit_response

    async def send_log(self, level, data):
        self.logs.append((level, data))

    async def send_list_changed(self):
        self.list_changed += 1


class RecordingEmailSender:
    """Keeps sent messages in memory, or raises ``fail`` on send."""

    def __init__(self, fail=None):
        self.sent = []
        self.fail = fail

    async def send(self, message):
        if self.fail is not None:
            raise self.fail
        self.sent.append(message)

    @property
    def last_code(self):
        return self.sent[-1].text.rsplit(" ", 1)[-1]


def sequential_codes(start=100000):
    """Code generator yielding distinct codes regardless of the clock."""
    counter = itertools.count(start)
    return lambda grant_id, email, now: str(next(counter))


@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_project):
    """Create a test configuration."""
    return ServerConfig(
        project_name="EpicMe Test",
        project_root=temp_project,
    )


@pytest.fixture
def store(config):
    """Open a store in the temp project, closed after the test."""
    s = JournalStore(config.get_database_path())
    yield s
    s.close()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def bridge(store, email_sender, config):
    """AuthBridge with predictable, always-distinct codes."""
    return AuthBridge(store, email_sender, config, code_generator=sequential_codes())


@pytest.fixture
def grant_id(bridge):
    """A fresh unclaimed grant."""
    return bridge.create_unclaimed_grant("candidate-user")


@pytest.fixture
def peer():
    return FakePeer()


@pytest.fixture
def session(grant_id, store, bridge, peer, config):
    """Session bound to the fresh grant, with the full operation catalog."""
    return JournalSession(
        grant_id,
        store,
        bridge,
        peer,
        config=config,
        catalog=make_tool_operations() + make_prompt_operations() + make_resource_operations(),
        tasks=BackgroundTasks(),
    )


@pytest.fixture
def user(store, grant_id):
    """Claim the session's grant for a@b.com without going through email."""
    u = store.get_or_create_user("a@b.com")
    store.set_grant_owner(grant_id, u.id)
    return u
