import asyncio
import logging

import pytest

from core.progress import ProgressReporter, ProgressUpdate, as_reporter


def test_values_are_clamped_and_monotonic() -> None:
    seen = []
    reporter = ProgressReporter(seen.append)

    reporter.report(-0.5, "start")
    reporter.report(0.6, "middle")
    reporter.report(0.3, "backwards")
    reporter.report(4.0, "done")

    assert [u.progress for u in seen] == [0.0, 0.6, 0.6, 1.0]
    assert seen[1] == ProgressUpdate(progress=0.6, message="middle", total=1.0)


def test_scaled_reporter_maps_into_parent_slot() -> None:
    seen = []
    parent = ProgressReporter(seen.append)

    child = parent.scaled(0.5, 1.0)
    child.report(0.0, "child start")
    child.report(0.5, "child half")
    child.report(1.0, "child done")

    assert [u.progress for u in seen] == [0.5, 0.75, 1.0]
    assert [u.message for u in seen] == ["child start", "child half", "child done"]


def test_without_sink_nothing_is_sent() -> None:
    reporter = as_reporter(None, source="test")
    reporter.report(0.5, "ignored")
    reporter.scaled(0.0, 0.5).report(1.0, "ignored")


def test_sync_sink_failure_is_logged_not_raised(caplog) -> None:
    def _sink(_update: ProgressUpdate) -> None:
        raise RuntimeError("client gone")

    reporter = ProgressReporter(_sink, source="ssh")
    with caplog.at_level(logging.WARNING, logger="Progress"):
        reporter.report(0.1, "connecting")

    assert "Failed to send progress notification (ssh)" in caplog.text


@pytest.mark.asyncio
async def test_async_sink_is_scheduled_and_failures_logged(caplog) -> None:
    delivered = []

    async def _sink(update: ProgressUpdate) -> None:
        if update.message == "bad":
            raise RuntimeError("transport closed")
        delivered.append(update.message)

    reporter = ProgressReporter(_sink, source="db")
    with caplog.at_level(logging.WARNING, logger="Progress"):
        reporter.report(0.2, "good")
        reporter.report(0.4, "bad")
        for _ in range(3):
            await asyncio.sleep(0)

    assert delivered == ["good"]
    assert "transport closed" in caplog.text


def test_as_reporter_passes_reporters_through() -> None:
    reporter = ProgressReporter(None)
    assert as_reporter(reporter, source="x") is reporter
