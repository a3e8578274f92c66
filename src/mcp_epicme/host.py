"""The protocol peer as seen by the journal core.

The core never talks to the MCP SDK directly. It talks to a ``Peer``: the
connected client, reached through whatever host is serving the session.
``server.McpPeer`` is the production adapter; tests use fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

# MCP logging levels, most verbose first
LOG_LEVELS = ("debug", "info", "notice", "warning", "error", "critical", "alert", "emergency")


def is_level_enabled(current: str, level: str) -> bool:
    """True if a message at ``level`` passes a session set to ``current``."""
    return LOG_LEVELS.index(level) >= LOG_LEVELS.index(current)


@dataclass(frozen=True)
class PeerCapabilities:
    """Client features the core may use."""
    sampling: bool = False
    elicitation: bool = False


@dataclass
class ElicitResponse:
    """Outcome of an elicitation round-trip."""
    action: str  # "accept", "decline" or "cancel"
    content: Optional[dict[str, Any]] = field(default=None)

    @property
    def accepted(self) -> bool:
        return self.action == "accept"


class Peer(Protocol):
    """Client-facing operations a session may invoke."""

    def capabilities(self) -> PeerCapabilities:
        ...

    async def create_message(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        max_tokens: int,
    ) -> str:
        """Ask the client's model for a completion; returns its text."""
        ...

    async def elicit(self, message: str, requested_schema: dict[str, Any]) -> ElicitResponse:
        ...

    async def send_log(self, level: str, data: Any) -> None:
        ...

    async def send_list_changed(self) -> None:
        """Tell the client the tool and prompt lists changed."""
        ...
