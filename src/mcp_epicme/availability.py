"""Which tools, prompts and resources a session advertises for its auth state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from .host import Peer
from .models import User

logger = logging.getLogger(__name__)


class Audience(Enum):
    """Who an operation is offered to."""
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    ALWAYS = "always"


@dataclass(frozen=True)
class Operation:
    """A registered tool, prompt or resource."""
    name: str
    audience: Audience
    kind: str = "tool"  # tool, prompt or resource


def enabled_operations(catalog: Iterable[Operation], authenticated: bool) -> frozenset[str]:
    """Names of the operations offered for the given auth state."""
    enabled = set()
    for op in catalog:
        if op.audience is Audience.ALWAYS:
            enabled.add(op.name)
        elif op.audience is Audience.AUTHENTICATED and authenticated:
            enabled.add(op.name)
        elif op.audience is Audience.UNAUTHENTICATED and not authenticated:
            enabled.add(op.name)
    return frozenset(enabled)


class AvailabilityGate:
    """Per-session view of the enabled operation set.

    With ``dynamic`` off (clients rarely honour list-changed notifications)
    every operation stays enabled and refresh does nothing.
    """

    def __init__(self, catalog: Iterable[Operation], peer: Optional[Peer] = None, dynamic: bool = False):
        self.catalog = tuple(catalog)
        self.peer = peer
        self.dynamic = dynamic
        self.enabled = frozenset(op.name for op in self.catalog)

    def catalog_names(self) -> frozenset[str]:
        return frozenset(op.name for op in self.catalog)

    def is_enabled(self, name: str) -> bool:
        return name in self.enabled

    def enabled_of_kind(self, kind: str) -> list[str]:
        """Enabled names of one kind, in catalog order."""
        return [op.name for op in self.catalog if op.kind == kind and op.name in self.enabled]

    async def refresh(self, user: Optional[User]) -> frozenset[str]:
        """Recompute the enabled set for ``user`` and notify the peer on change."""
        if not self.dynamic:
            return self.enabled

        enabled = enabled_operations(self.catalog, authenticated=user is not None)
        if enabled == self.enabled:
            return enabled

        self.enabled = enabled
        logger.debug("Enabled operations now: %s", ", ".join(sorted(enabled)))
        if self.peer is not None:
            await self.peer.send_list_changed()
        return enabled
