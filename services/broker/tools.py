from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from mcp.types import Tool
from pydantic import BaseModel, ConfigDict, Field, PositiveInt

from core.cancellation import CancellationToken
from core.config import BrokerConfig, get_config
from core.errors import NotFoundError
from infra.concurrency import ConcurrencyLimiter
from infra.sql_executor import QueryOptions, RelationalQueryExecutor
from infra.ssh_executor import RemoteShellExecutor, ShellCommandOptions
from services.training.models import TrainingJobInput
from services.training.orchestrator import TrainingOrchestrator

logger = logging.getLogger("BrokerTools")

SSH_EXECUTE = "ssh_execute"
DB_QUERY = "db_query"
TRAIN_CLASSIFIER = "train_classifier"


class SshExecuteArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    profile: str = Field(min_length=1, description="SSH profile to use")
    command: str = Field(min_length=1, description="Command to execute on the remote host")
    timeout_ms: Optional[PositiveInt] = Field(None, description="Execution timeout in milliseconds")
    max_output_bytes: Optional[PositiveInt] = Field(None, description="Per-stream output ceiling in bytes")
    cwd: Optional[str] = Field(None, description="Remote working directory")
    env: Optional[Dict[str, str]] = Field(None, description="Extra environment variables")


class DbQueryArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    profile: str = Field(min_length=1, description="Database profile to use")
    query: str = Field(min_length=1, description="Single SQL statement; use $1, $2 ... for parameters")
    parameters: Optional[List[Any]] = Field(None, description="Positional parameters for the query")
    timeout_ms: Optional[PositiveInt] = Field(None, description="Query timeout in milliseconds")
    row_limit: Optional[PositiveInt] = Field(None, description="Maximum number of rows to return")


ToolHandler = Callable[..., Awaitable[Dict[str, Any]]]


class BrokerTools:
    """Validates tool arguments and dispatches them to the executors."""

    def __init__(
        self,
        *,
        shell: RemoteShellExecutor,
        query: RelationalQueryExecutor,
        training: TrainingOrchestrator,
    ) -> None:
        self.shell = shell
        self.query = query
        self.training = training
        self._handlers: Dict[str, ToolHandler] = {
            SSH_EXECUTE: self._ssh_execute,
            DB_QUERY: self._db_query,
            TRAIN_CLASSIFIER: self._train_classifier,
        }

    @classmethod
    def from_config(cls, config_provider: Callable[[], BrokerConfig] = get_config) -> "BrokerTools":
        shell = RemoteShellExecutor(config_provider=config_provider, limiter=ConcurrencyLimiter())
        return cls(
            shell=shell,
            query=RelationalQueryExecutor(config_provider=config_provider, limiter=ConcurrencyLimiter()),
            training=TrainingOrchestrator(shell, config_provider=config_provider),
        )

    @staticmethod
    def definitions() -> List[Tool]:
        return [
            Tool(
                name=SSH_EXECUTE,
                description="Execute an allowlisted command on a remote host using a configured SSH profile",
                inputSchema=SshExecuteArgs.model_json_schema(),
            ),
            Tool(
                name=DB_QUERY,
                description="Execute a single allowlisted SQL statement using a configured PostgreSQL profile",
                inputSchema=DbQueryArgs.model_json_schema(),
            ),
            Tool(
                name=TRAIN_CLASSIFIER,
                description="Run a templated training command once per subclass over SSH, in order",
                inputSchema=TrainingJobInput.model_json_schema(),
            ),
        ]

    async def call(
        self,
        name: str,
        arguments: Dict[str, Any],
        *,
        cancellation: Optional[CancellationToken] = None,
        progress: Any = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        handler = self._handlers.get(name)
        if handler is None:
            raise NotFoundError(f"Unknown tool: {name}")
        logger.info("Tool call tool=%s request_id=%s", name, request_id)
        return await handler(
            arguments or {},
            cancellation=cancellation,
            progress=progress,
            request_id=request_id,
        )

    async def _ssh_execute(self, arguments: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        args = SshExecuteArgs.model_validate(arguments)
        result = await self.shell.execute(
            args.profile,
            args.command,
            ShellCommandOptions(
                timeout_ms=args.timeout_ms,
                max_output_bytes=args.max_output_bytes,
                cwd=args.cwd,
                env=args.env,
                request_id=kwargs.get("request_id"),
                tool=SSH_EXECUTE,
            ),
            cancellation=kwargs.get("cancellation"),
            progress=kwargs.get("progress"),
        )
        return result.to_dict()

    async def _db_query(self, arguments: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        args = DbQueryArgs.model_validate(arguments)
        result = await self.query.execute(
            args.profile,
            args.query,
            args.parameters,
            QueryOptions(
                timeout_ms=args.timeout_ms,
                row_limit=args.row_limit,
                request_id=kwargs.get("request_id"),
                tool=DB_QUERY,
            ),
            cancellation=kwargs.get("cancellation"),
            progress=kwargs.get("progress"),
        )
        return result.to_dict()

    async def _train_classifier(self, arguments: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        job_input = TrainingJobInput.model_validate(arguments)
        job = await self.training.run(
            job_input,
            cancellation=kwargs.get("cancellation"),
            progress=kwargs.get("progress"),
            request_id=kwargs.get("request_id"),
        )
        return job.to_dict()
