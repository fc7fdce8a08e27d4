from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Deque, Dict, Optional

from core.cancellation import CancellationToken
from core.errors import OperationCancelledError

logger = logging.getLogger("ConcurrencyLimiter")


@dataclass
class _KeyState:
    key: str
    limit: int
    active: int = 0
    waiters: Deque["asyncio.Future[ConcurrencySlot]"] = field(default_factory=deque)


class ConcurrencySlot:
    """One unit of capacity under a key. Releasing twice is a no-op."""

    def __init__(self, limiter: "ConcurrencyLimiter", key: str) -> None:
        self._limiter = limiter
        self.key = key
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        if self._released:
            return False
        self._released = True
        self._limiter._release(self.key)
        return True

    async def __aenter__(self) -> "ConcurrencySlot":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class ConcurrencyLimiter:
    """Per-key FIFO admission control.

    State is only touched from the event loop thread and never across an
    await, so no lock is needed.
    """

    def __init__(self) -> None:
        self._states: Dict[str, _KeyState] = {}

    async def acquire(
        self,
        key: str,
        limit: int,
        cancellation: Optional[CancellationToken] = None,
    ) -> ConcurrencySlot:
        if cancellation is not None and cancellation.cancelled:
            raise OperationCancelledError("cancelled while waiting for capacity")

        limit = max(1, int(limit))
        state = self._states.get(key)
        if state is None:
            state = _KeyState(key=key, limit=limit)
            self._states[key] = state
        else:
            state.limit = limit
            self._drain(state)

        if state.active < state.limit and not state.waiters:
            state.active += 1
            return ConcurrencySlot(self, key)

        future: asyncio.Future[ConcurrencySlot] = asyncio.get_running_loop().create_future()
        state.waiters.append(future)
        logger.debug("Queued for key=%s active=%s queued=%s", key, state.active, len(state.waiters))

        def _abandon(reason: str) -> None:
            if future.done():
                return
            self._remove_waiter(key, future)
            future.set_exception(OperationCancelledError("cancelled while waiting for capacity"))

        unregister = cancellation.add_callback(_abandon) if cancellation is not None else None
        try:
            return await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled() and future.exception() is None:
                # Granted in the same tick the awaiting task was cancelled.
                future.result().release()
            else:
                self._remove_waiter(key, future)
            raise
        finally:
            if unregister is not None:
                unregister()

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        limit: int,
        cancellation: Optional[CancellationToken] = None,
    ) -> AsyncIterator[ConcurrencySlot]:
        slot = await self.acquire(key, limit, cancellation)
        try:
            yield slot
        finally:
            slot.release()

    def active(self, key: str) -> int:
        state = self._states.get(key)
        return state.active if state else 0

    def queued(self, key: str) -> int:
        state = self._states.get(key)
        return len(state.waiters) if state else 0

    @property
    def tracked_keys(self) -> list[str]:
        return list(self._states)

    def _release(self, key: str) -> None:
        state = self._states.get(key)
        if state is None:
            logger.warning("Release for unknown key=%s ignored", key)
            return
        state.active = max(0, state.active - 1)
        self._drain(state)
        self._discard_if_idle(key, state)

    def _drain(self, state: _KeyState) -> None:
        while state.waiters and state.active < state.limit:
            future = state.waiters.popleft()
            if future.done():
                continue
            state.active += 1
            future.set_result(ConcurrencySlot(self, state.key))

    def _remove_waiter(self, key: str, future: "asyncio.Future[ConcurrencySlot]") -> None:
        state = self._states.get(key)
        if state is None:
            return
        try:
            state.waiters.remove(future)
        except ValueError:
            pass
        self._discard_if_idle(key, state)

    def _discard_if_idle(self, key: str, state: _KeyState) -> None:
        if state.active == 0 and not state.waiters and self._states.get(key) is state:
            del self._states[key]
