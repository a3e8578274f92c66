"""Grant-scoped session state, observers, and supervised background work.

One ``JournalSession`` exists per connected grant. Its operations run on a
single asyncio loop, one after another, so grant and token mutations within
a session need no extra locking.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Coroutine, Iterable, Optional

from .auth import AuthBridge
from .availability import AvailabilityGate, Operation
from .config import ServerConfig
from .host import Peer
from .models import User, ValidationToken
from .reconciler import TagReconciler
from .store import JournalStore

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Detached tasks that outlive the request which started them.

    Failures are logged and never propagate to the spawner.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed", task.get_name(),
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def drain(self) -> None:
        """Wait until every task, including ones spawned meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()


@dataclass(frozen=True)
class SessionState:
    """Observable session state."""
    user_id: Optional[int] = None
    logging_level: str = "info"


StateObserver = Callable[[SessionState], Awaitable[None]]


class JournalSession:
    """One protocol session bound to one grant."""

    def __init__(
        self,
        grant_id: Optional[str],
        store: JournalStore,
        bridge: AuthBridge,
        peer: Peer,
        config: Optional[ServerConfig] = None,
        catalog: Iterable[Operation] = (),
        tasks: Optional[BackgroundTasks] = None,
    ):
        self.grant_id = grant_id
        self.store = store
        self.bridge = bridge
        self.peer = peer
        self.config = config or ServerConfig()
        self.tasks = tasks or BackgroundTasks()
        self.state = SessionState(logging_level=self.config.logging_level)
        self._observers: list[StateObserver] = []
        self.gate = AvailabilityGate(catalog, peer=peer, dynamic=self.config.dynamic_capabilities)
        self.reconciler = TagReconciler(
            store,
            peer,
            tasks=self.tasks,
            threshold=self.config.confidence_threshold,
            max_suggestions=self.config.max_suggestions,
            max_tokens=self.config.sampling_max_tokens,
            logging_level=lambda: self.state.logging_level,
        )
        self.subscribe(self._refresh_availability)

    def subscribe(self, observer: StateObserver) -> None:
        self._observers.append(observer)

    async def set_state(self, **changes: Any) -> SessionState:
        """Apply changes and notify observers with the new state."""
        self.state = replace(self.state, **changes)
        state = self.state
        for observer in list(self._observers):
            try:
                await observer(state)
            except Exception:
                logger.exception("Session state observer failed")
        return state

    async def _refresh_availability(self, state: SessionState) -> None:
        user = self.store.get_user_by_id(state.user_id) if state.user_id is not None else None
        await self.gate.refresh(user)

    async def load(self) -> SessionState:
        """Resolve the grant's current owner into session state."""
        user = self.bridge.current_user(self.grant_id)
        return await self.set_state(user_id=user.id if user else None)

    def require_user(self) -> User:
        return self.bridge.require_user(self.grant_id)

    async def authenticate(self, email: str) -> ValidationToken:
        return await self.bridge.authenticate(self.grant_id, email)

    async def validate_token(self, code: str) -> User:
        user = self.bridge.validate_token(self.grant_id, code)
        await self.set_state(user_id=user.id)
        return user

    async def logout(self) -> bool:
        changed = self.bridge.unclaim(self.grant_id)
        await self.set_state(user_id=None)
        return changed

    async def set_logging_level(self, level: str) -> None:
        await self.set_state(logging_level=level)

    def schedule_tag_suggestions(self, user_id: int, entry_id: int) -> asyncio.Task:
        """Run tag reconciliation for a new entry without blocking the caller."""
        return self.tasks.spawn(
            self.reconciler.reconcile(user_id, entry_id),
            name=f"suggest-tags-{entry_id}",
        )
