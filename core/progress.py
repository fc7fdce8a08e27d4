from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Set

logger = logging.getLogger("Progress")


@dataclass(frozen=True)
class ProgressUpdate:
    progress: float
    message: Optional[str] = None
    total: float = 1.0


ProgressSink = Callable[[ProgressUpdate], Any]


class ProgressReporter:
    """Best-effort progress side channel.

    Values are clamped to [0, 1], mapped into ``[start, end]`` and never go
    backwards. Sinks may be sync or async; delivery failures are logged and
    never reach the operation being reported on.
    """

    def __init__(
        self,
        sink: Optional[ProgressSink],
        *,
        source: str = "broker",
        start: float = 0.0,
        end: float = 1.0,
    ) -> None:
        self.sink = sink
        self.source = source
        self.start = float(start)
        self.end = float(end)
        self._last = self.start
        self._reported = False
        self._pending: Set[asyncio.Future[Any]] = set()

    def __call__(self, update: ProgressUpdate) -> None:
        self.report(update.progress, update.message)

    def report(self, progress: float, message: Optional[str] = None) -> None:
        if self.sink is None:
            return
        fraction = min(max(float(progress), 0.0), 1.0)
        value = self.start + (self.end - self.start) * fraction
        if self._reported:
            value = max(value, self._last)
        self._last = value
        self._reported = True
        try:
            outcome = self.sink(ProgressUpdate(progress=value, message=message))
            if inspect.isawaitable(outcome):
                future = asyncio.ensure_future(outcome)
                self._pending.add(future)
                future.add_done_callback(self._on_delivered)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to send progress notification (%s): %s", self.source, exc)

    def scaled(self, start: float, end: float, *, source: Optional[str] = None) -> "ProgressReporter":
        """Child reporter whose [0, 1] maps into [start, end] of this one."""
        return ProgressReporter(
            self if self.sink is not None else None,
            source=source or self.source,
            start=start,
            end=end,
        )

    def _on_delivered(self, future: asyncio.Future[Any]) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Failed to send progress notification (%s): %s", self.source, exc)


def as_reporter(progress: Any, *, source: str) -> ProgressReporter:
    """Accept a reporter, a bare sink, or None."""
    if isinstance(progress, ProgressReporter):
        return progress
    return ProgressReporter(progress, source=source)
