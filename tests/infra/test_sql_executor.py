import asyncio

import pytest

from core.cancellation import CancellationToken
from core.errors import (
    ExecutionTimeoutError,
    NotFoundError,
    OperationCancelledError,
    PolicyViolationError,
    TransportError,
)
from infra.pg_client import QueryOutcome
from infra.sql_executor import QueryOptions, RelationalQueryExecutor


class _FakeQuerySession:
    def __init__(
        self,
        conninfo,
        *,
        rows=None,
        row_count=None,
        returns_rows=True,
        hang=False,
        connect_hang=False,
        error=None,
    ):
        self.conninfo = conninfo
        self.rows = rows or []
        self.row_count = len(self.rows) if row_count is None else row_count
        self.returns_rows = returns_rows
        self.hang = hang
        self.connect_hang = connect_hang
        self.error = error
        self.calls = []
        self.close_calls = []
        self.executing = asyncio.Event()
        self.connecting = asyncio.Event()

    async def connect(self):
        self.calls.append(("connect",))
        self.connecting.set()
        if self.connect_hang:
            await asyncio.sleep(30)

    async def set_statement_timeout(self, timeout_ms):
        self.calls.append(("statement_timeout", timeout_ms))

    async def execute(self, query, parameters, *, row_limit):
        self.calls.append(("execute", query, parameters, row_limit))
        self.executing.set()
        if self.hang:
            await asyncio.sleep(30)
        if self.error is not None:
            raise self.error
        return QueryOutcome(
            rows=self.rows[:row_limit],
            row_count=self.row_count,
            returns_rows=self.returns_rows,
        )

    async def close(self, *, abort=False):
        self.close_calls.append(abort)


class _FakeConnector:
    def __init__(self, **session_kwargs):
        self.session_kwargs = session_kwargs
        self.sessions = []

    def open(self, conninfo):
        session = _FakeQuerySession(conninfo, **self.session_kwargs)
        self.sessions.append(session)
        return session


def _executor(make_config, connector, **profile_overrides):
    profile = {
        "connection_string": "postgresql://app@db/app",
        "allowed_statements": ["^\\s*select\\b", "^\\s*update\\b"],
        "max_rows": 2,
        "max_execution_ms": 1000,
    }
    profile.update(profile_overrides)
    config = make_config({"database_profiles": {"analytics": profile}})
    return RelationalQueryExecutor(config_provider=lambda: config, connector=connector)


@pytest.mark.asyncio
async def test_rows_are_capped_and_server_count_reported(make_config) -> None:
    rows = [{"id": 1}, {"id": 2}, {"id": 3}]
    connector = _FakeConnector(rows=rows)
    executor = _executor(make_config, connector)
    updates = []

    result = await executor.execute(
        "analytics",
        "SELECT id FROM t WHERE org = $1",
        ["acme"],
        QueryOptions(request_id="req-9", tool="db_query"),
        progress=updates.append,
    )

    assert result.rows == [{"id": 1}, {"id": 2}]
    assert result.row_count == 3
    assert result.truncated is True
    session = connector.sessions[0]
    assert session.conninfo == "postgresql://app@db/app"
    assert session.calls == [
        ("connect",),
        ("statement_timeout", 1000),
        ("execute", "SELECT id FROM t WHERE org = $1", ["acme"], 2),
    ]
    assert session.close_calls == [False]
    assert [u.message for u in updates] == [
        "Waiting for database availability",
        "Connecting to database",
        "Applying session limits",
        "Executing query",
        "Database query completed",
    ]


@pytest.mark.asyncio
async def test_overrides_only_tighten_limits(make_config) -> None:
    connector = _FakeConnector(rows=[{"id": 1}])
    executor = _executor(make_config, connector)

    await executor.execute("analytics", "select 1", options=QueryOptions(timeout_ms=250, row_limit=50))

    assert connector.sessions[0].calls[1] == ("statement_timeout", 250)
    assert connector.sessions[0].calls[2][3] == 2


@pytest.mark.asyncio
async def test_statement_without_result_set_reports_affected_rows(make_config) -> None:
    connector = _FakeConnector(rows=[], row_count=7, returns_rows=False)
    executor = _executor(make_config, connector)

    result = await executor.execute("analytics", "UPDATE t SET seen = true")

    assert result.rows == []
    assert result.row_count == 7
    assert result.truncated is False


@pytest.mark.asyncio
async def test_unsafe_query_never_connects(make_config) -> None:
    connector = _FakeConnector()
    executor = _executor(make_config, connector)

    for query in ("SELECT 1; DROP TABLE t", "SELECT 1 -- hi", "DELETE FROM t"):
        with pytest.raises(PolicyViolationError):
            await executor.execute("analytics", query)

    assert connector.sessions == []


@pytest.mark.asyncio
async def test_unknown_profile_raises_not_found(make_config) -> None:
    executor = _executor(make_config, _FakeConnector())
    with pytest.raises(NotFoundError):
        await executor.execute("nope", "select 1")


@pytest.mark.asyncio
async def test_client_timeout_aborts_statement(make_config) -> None:
    connector = _FakeConnector(hang=True)
    executor = _executor(make_config, connector)

    with pytest.raises(ExecutionTimeoutError):
        await executor.execute("analytics", "select pg_sleep(10)", options=QueryOptions(timeout_ms=50))

    assert connector.sessions[0].close_calls == [True]
    assert executor.limiter.active("analytics") == 0


@pytest.mark.asyncio
async def test_server_statement_timeout_maps_to_timeout(make_config) -> None:
    connector = _FakeConnector(error=ExecutionTimeoutError("statement cancelled by server"))
    executor = _executor(make_config, connector)

    with pytest.raises(ExecutionTimeoutError):
        await executor.execute("analytics", "select pg_sleep(10)")

    assert connector.sessions[0].close_calls == [False]


@pytest.mark.asyncio
async def test_cancel_mid_query_aborts_and_reports_cancelled(make_config) -> None:
    connector = _FakeConnector(hang=True)
    executor = _executor(make_config, connector)
    token = CancellationToken()

    call = asyncio.create_task(executor.execute("analytics", "select 1", cancellation=token))
    while not connector.sessions:
        await asyncio.sleep(0)
    await asyncio.wait_for(connector.sessions[0].executing.wait(), 1)
    token.cancel("stop")

    with pytest.raises(OperationCancelledError):
        await asyncio.wait_for(call, 1)
    assert connector.sessions[0].close_calls == [True]
    assert executor.limiter.tracked_keys == []


@pytest.mark.asyncio
async def test_transport_error_propagates_after_cleanup(make_config) -> None:
    connector = _FakeConnector(error=TransportError("query failed: relation does not exist"))
    executor = _executor(make_config, connector)

    with pytest.raises(TransportError):
        await executor.execute("analytics", "select * from missing")

    assert connector.sessions[0].close_calls == [False]
    assert executor.limiter.active("analytics") == 0


@pytest.mark.asyncio
async def test_cancel_while_connecting_aborts_session(make_config) -> None:
    connector = _FakeConnector(connect_hang=True)
    executor = _executor(make_config, connector)
    token = CancellationToken()

    call = asyncio.create_task(executor.execute("analytics", "select 1", cancellation=token))
    while not connector.sessions:
        await asyncio.sleep(0)
    await asyncio.wait_for(connector.sessions[0].connecting.wait(), 1)
    token.cancel("stop")

    with pytest.raises(OperationCancelledError):
        await asyncio.wait_for(call, 1)
    session = connector.sessions[0]
    assert session.calls == [("connect",)]
    assert session.close_calls == [True]
    assert executor.limiter.tracked_keys == []
