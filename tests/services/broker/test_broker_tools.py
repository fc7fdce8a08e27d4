import asyncio
import json

import anyio
import pytest

from core.errors import PolicyViolationError
from infra.sql_executor import QueryResult
from infra.ssh_executor import OutputTruncation, ShellCommandResult
from services.broker.server import dispatch
from services.broker.tools import DB_QUERY, SSH_EXECUTE, TRAIN_CLASSIFIER, BrokerTools
from services.training.orchestrator import TrainingOrchestrator


class _FakeShell:
    def __init__(self, *, error=None, hang=False, teardown_sec=0.0):
        self.error = error
        self.hang = hang
        self.teardown_sec = teardown_sec
        self.torn_down = False
        self.calls = []
        self.tokens = []

    async def execute(self, profile, command, options=None, *, cancellation=None, progress=None):
        self.calls.append((profile, command, options))
        self.tokens.append(cancellation)
        if self.hang:
            await cancellation.wait()
            await asyncio.sleep(self.teardown_sec)
            self.torn_down = True
            cancellation.raise_if_cancelled()
        if self.error is not None:
            raise self.error
        return ShellCommandResult(
            stdout="hi\n", stderr="", truncated=OutputTruncation(), exit_code=0, duration_ms=3
        )


class _FakeQuery:
    def __init__(self):
        self.calls = []

    async def execute(self, profile, query, parameters=None, options=None, *, cancellation=None, progress=None):
        self.calls.append((profile, query, parameters, options))
        return QueryResult(rows=[{"n": 1}], row_count=1, truncated=False, duration_ms=2)


def _tools(make_config, shell=None, query=None):
    config = make_config({"training": {"default_command_template": "train {{subclass}}"}})
    shell = shell or _FakeShell()
    return BrokerTools(
        shell=shell,
        query=query or _FakeQuery(),
        training=TrainingOrchestrator(shell, config_provider=lambda: config),
    )


def test_definitions_list_three_tools_with_schemas() -> None:
    tools = {tool.name: tool for tool in BrokerTools.definitions()}

    assert set(tools) == {SSH_EXECUTE, DB_QUERY, TRAIN_CLASSIFIER}
    assert set(tools[SSH_EXECUTE].inputSchema["required"]) == {"profile", "command"}
    assert set(tools[DB_QUERY].inputSchema["required"]) == {"profile", "query"}
    assert set(tools[TRAIN_CLASSIFIER].inputSchema["required"]) == {"profile", "subclasses", "dataset_path"}


@pytest.mark.asyncio
async def test_ssh_execute_maps_arguments_to_options(make_config) -> None:
    shell = _FakeShell()
    tools = _tools(make_config, shell=shell)

    result = await tools.call(
        SSH_EXECUTE,
        {"profile": "box", "command": "echo hi", "timeout_ms": 500, "cwd": "/tmp"},
        request_id="7",
    )

    assert result["stdout"] == "hi\n"
    profile, command, options = shell.calls[0]
    assert (profile, command) == ("box", "echo hi")
    assert options.timeout_ms == 500
    assert options.cwd == "/tmp"
    assert options.request_id == "7"
    assert options.tool == SSH_EXECUTE


@pytest.mark.asyncio
async def test_db_query_passes_parameters(make_config) -> None:
    query = _FakeQuery()
    tools = _tools(make_config, query=query)

    result = await tools.call(DB_QUERY, {"profile": "db", "query": "select $1", "parameters": [1], "row_limit": 5})

    assert result == {"rows": [{"n": 1}], "row_count": 1, "truncated": False, "duration_ms": 2}
    assert query.calls[0][2] == [1]
    assert query.calls[0][3].row_limit == 5


@pytest.mark.asyncio
async def test_train_classifier_returns_job(make_config) -> None:
    tools = _tools(make_config)

    result = await tools.call(
        TRAIN_CLASSIFIER, {"profile": "gpu", "subclasses": ["cat"], "dataset_path": "/d", "dry_run": True}
    )

    assert result["status"] == "succeeded"
    assert result["tasks"][0]["command"] == "train cat"


@pytest.mark.asyncio
async def test_dispatch_wraps_invalid_arguments(make_config) -> None:
    tools = _tools(make_config)

    content = await dispatch(tools, SSH_EXECUTE, {"profile": "box"})

    payload = json.loads(content[0].text)
    assert payload["error"]["code"] == "bad_request"
    assert payload["error"]["source"] == SSH_EXECUTE


@pytest.mark.asyncio
async def test_dispatch_reports_policy_errors_and_unknown_tools(make_config) -> None:
    tools = _tools(make_config, shell=_FakeShell(error=PolicyViolationError("Command is not permitted by policy")))

    denied = json.loads((await dispatch(tools, SSH_EXECUTE, {"profile": "b", "command": "rm"}))[0].text)
    unknown = json.loads((await dispatch(tools, "nope", {}))[0].text)

    assert denied["error"] == {
        "code": "policy_violation",
        "message": "Command is not permitted by policy",
        "source": SSH_EXECUTE,
    }
    assert unknown["error"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_dispatch_hides_unexpected_error_details(make_config) -> None:
    tools = _tools(make_config, shell=_FakeShell(error=RuntimeError("password=hunter2")))

    payload = json.loads((await dispatch(tools, SSH_EXECUTE, {"profile": "b", "command": "echo"}))[0].text)

    assert payload["error"]["code"] == "internal_error"
    assert "hunter2" not in payload["error"]["message"]


@pytest.mark.asyncio
async def test_cancelling_dispatch_fires_the_call_token(make_config) -> None:
    shell = _FakeShell(hang=True)
    tools = _tools(make_config, shell=shell)

    call = asyncio.create_task(dispatch(tools, SSH_EXECUTE, {"profile": "b", "command": "sleep 9"}))
    while not shell.tokens:
        await asyncio.sleep(0)
    call.cancel()

    with pytest.raises(asyncio.CancelledError):
        await call
    assert shell.tokens[0].cancelled is True


@pytest.mark.asyncio
async def test_scope_cancellation_waits_for_tool_teardown(make_config) -> None:
    shell = _FakeShell(hang=True, teardown_sec=0.05)
    tools = _tools(make_config, shell=shell)
    scopes = []

    async def _handle() -> None:
        with anyio.CancelScope() as scope:
            scopes.append(scope)
            await dispatch(tools, SSH_EXECUTE, {"profile": "b", "command": "sleep 9"})

    handler = asyncio.create_task(_handle())
    while not shell.tokens:
        await asyncio.sleep(0)
    scopes[0].cancel()
    await asyncio.wait_for(handler, 1)

    assert scopes[0].cancelled_caught is True
    assert shell.torn_down is True
    assert shell.tokens[0].cancelled is True
