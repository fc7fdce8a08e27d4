"""Cooperative cancellation token threaded explicitly through broker calls.

A token is a flag plus a reason plus registered callbacks. It is created by the
caller (the tool server creates one per request) and passed down through slot
acquisition, connect and execution. `run_cancellable` races any awaitable
against a token so cancellation is observed at every suspension point.

All methods must be called from the event loop thread.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

from core.errors import OperationCancelledError

logger = logging.getLogger("Cancellation")

T = TypeVar("T")

CancelCallback = Callable[[str], None]


class CancellationToken:
    def __init__(self) -> None:
        self._reason: Optional[str] = None
        self._callbacks: List[CancelCallback] = []
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "operation cancelled") -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._reason is not None:
            return False
        self._reason = str(reason or "operation cancelled")
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self._reason)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Cancellation callback failed: %s", exc, exc_info=True)
        return True

    def add_callback(self, callback: CancelCallback) -> Callable[[], None]:
        """Register a callback; returns an unregister function.

        If the token already fired the callback runs immediately.
        """
        if self._reason is not None:
            callback(self._reason)
            return lambda: None
        self._callbacks.append(callback)

        def _unregister() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _unregister

    def raise_if_cancelled(self, message: Optional[str] = None) -> None:
        if self._reason is not None:
            raise OperationCancelledError(message or self._reason)

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason or ""


async def run_cancellable(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken],
    *,
    message: str = "operation cancelled",
) -> T:
    """Await `awaitable` unless `token` fires first.

    When the token fires the inner task is cancelled and awaited, then
    OperationCancelledError is raised. If both settle before we observe them,
    a successful result wins and an error loses to the cancellation.
    """
    if token is None:
        return await awaitable
    if token.cancelled:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelledError(message)

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task.done() and not task.cancelled():
        if task.exception() is None or not token.cancelled:
            return task.result()
        logger.debug("Discarding error superseded by cancellation: %r", task.exception())
        raise OperationCancelledError(message)

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        current = asyncio.current_task()
        if current is not None and current.cancelling():
            raise
    except Exception as exc:  # noqa: BLE001
        logger.debug("Discarding error superseded by cancellation: %r", exc)
    raise OperationCancelledError(message)
