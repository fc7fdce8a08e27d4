from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from core.cancellation import CancellationToken, run_cancellable
from core.config import BrokerConfig, SshProfile, get_config
from core.errors import (
    BrokerError,
    ExecutionTimeoutError,
    MissingCredentialsError,
    NotFoundError,
    OperationCancelledError,
)
from core.policy import ensure_command_allowed
from core.progress import as_reporter
from core.time_utils import elapsed_ms
from core.utils import clamp_limit, is_loopback_host
from infra.buffers import TruncatingBuffer
from infra.concurrency import ConcurrencyLimiter
from infra.ssh_client import ParamikoSshConnector, SshConnectParams, SshExitStatus

logger = logging.getLogger("SshExecutor")


@dataclass
class ShellCommandOptions:
    timeout_ms: Optional[int] = None
    max_output_bytes: Optional[int] = None
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    request_id: Optional[str] = None
    tool: Optional[str] = None


@dataclass
class OutputTruncation:
    stdout: bool = False
    stderr: bool = False


@dataclass
class ShellCommandResult:
    stdout: str
    stderr: str
    truncated: OutputTruncation
    exit_code: Optional[int]
    duration_ms: int
    signal: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.signal is None:
            data.pop("signal")
        return data


def connect_params_for(profile_name: str, profile: SshProfile) -> SshConnectParams:
    """Pick exactly one auth method; a private key wins over a password."""
    if profile.private_key:
        return SshConnectParams(
            host=profile.host,
            port=profile.port,
            username=profile.username,
            private_key=profile.private_key,
            passphrase=profile.passphrase,
        )
    if profile.password:
        return SshConnectParams(
            host=profile.host,
            port=profile.port,
            username=profile.username,
            password=profile.password,
        )
    raise MissingCredentialsError(f"SSH profile '{profile_name}' is missing authentication details")


class RemoteShellExecutor:
    def __init__(
        self,
        *,
        config_provider: Callable[[], BrokerConfig] = get_config,
        connector: Any = None,
        limiter: Optional[ConcurrencyLimiter] = None,
    ) -> None:
        self._config_provider = config_provider
        self._connector = connector
        self.limiter = limiter or ConcurrencyLimiter()

    def _connector_for(self, config: BrokerConfig) -> Any:
        if self._connector is not None:
            return self._connector
        return ParamikoSshConnector(host_key_policy=config.ssh_host_key_policy)

    async def execute(
        self,
        profile_name: str,
        command: str,
        options: Optional[ShellCommandOptions] = None,
        *,
        cancellation: Optional[CancellationToken] = None,
        progress: Any = None,
    ) -> ShellCommandResult:
        opts = options or ShellCommandOptions()
        reporter = as_reporter(progress, source="ssh")
        config = self._config_provider()
        profile = config.ssh_profiles.get(profile_name)
        if profile is None:
            raise NotFoundError(f"SSH profile '{profile_name}' not found")

        if config.local_test_mode and is_loopback_host(profile.host):
            logger.warning(
                "Local test mode: command allowlist skipped profile=%s host=%s request_id=%s",
                profile_name,
                profile.host,
                opts.request_id,
            )
        else:
            ensure_command_allowed(command, profile.policy.allowed_command_patterns)

        timeout_ms = clamp_limit(opts.timeout_ms, profile.policy.max_execution_ms)
        output_limit = clamp_limit(opts.max_output_bytes, profile.policy.max_output_bytes)
        params = connect_params_for(profile_name, profile)

        reporter.report(0.0, "Waiting for SSH availability")
        try:
            slot = await self.limiter.acquire(profile_name, profile.policy.max_concurrent, cancellation)
        except OperationCancelledError:
            reporter.report(1.0, "SSH command cancelled")
            raise
        async with slot:
            return await self._run(
                config,
                profile_name,
                params,
                command,
                opts,
                timeout_ms=timeout_ms,
                output_limit=output_limit,
                cancellation=cancellation,
                reporter=reporter,
            )

    async def _run(
        self,
        config: BrokerConfig,
        profile_name: str,
        params: SshConnectParams,
        command: str,
        opts: ShellCommandOptions,
        *,
        timeout_ms: int,
        output_limit: int,
        cancellation: Optional[CancellationToken],
        reporter: Any,
    ) -> ShellCommandResult:
        stdout_buf = TruncatingBuffer(output_limit)
        stderr_buf = TruncatingBuffer(output_limit)
        session = self._connector_for(config).open(params)
        start = time.monotonic()
        logger.info(
            "Executing SSH command profile=%s request_id=%s tool=%s auth=%s timeout_ms=%s",
            profile_name,
            opts.request_id,
            opts.tool,
            params.auth_method,
            timeout_ms,
        )
        reporter.report(0.1, "Connecting to remote host")

        async def _connect_and_run() -> SshExitStatus:
            await session.connect()
            reporter.report(0.4, "Executing remote command")
            return await session.run(
                command,
                cwd=opts.cwd,
                env=opts.env,
                on_stdout=stdout_buf.push,
                on_stderr=stderr_buf.push,
            )

        try:
            status = await asyncio.wait_for(
                run_cancellable(_connect_and_run(), cancellation, message="SSH command cancelled"),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            reporter.report(1.0, "SSH command timed out")
            logger.warning(
                "SSH command timed out profile=%s request_id=%s tool=%s timeout_ms=%s",
                profile_name,
                opts.request_id,
                opts.tool,
                timeout_ms,
            )
            raise ExecutionTimeoutError(f"SSH command timed out after {timeout_ms} ms") from None
        except OperationCancelledError:
            reporter.report(1.0, "SSH command cancelled")
            logger.info("SSH command cancelled profile=%s request_id=%s", profile_name, opts.request_id)
            raise
        except BrokerError as exc:
            if cancellation is not None and cancellation.cancelled:
                reporter.report(1.0, "SSH command cancelled")
                raise OperationCancelledError("SSH command cancelled") from exc
            reporter.report(1.0, "SSH command failed")
            logger.error(
                "SSH command failed profile=%s request_id=%s tool=%s error=%s",
                profile_name,
                opts.request_id,
                opts.tool,
                exc,
            )
            raise
        finally:
            await _close_session(session, profile_name)

        duration_ms = elapsed_ms(start)
        result = ShellCommandResult(
            stdout=stdout_buf.to_text(),
            stderr=stderr_buf.to_text(),
            truncated=OutputTruncation(stdout=stdout_buf.truncated, stderr=stderr_buf.truncated),
            exit_code=status.exit_code,
            signal=status.signal,
            duration_ms=duration_ms,
        )
        logger.info(
            "SSH command completed profile=%s request_id=%s tool=%s exit_code=%s duration_ms=%s "
            "stdout_bytes=%s stderr_bytes=%s stdout_truncated=%s stderr_truncated=%s",
            profile_name,
            opts.request_id,
            opts.tool,
            result.exit_code,
            duration_ms,
            stdout_buf.size(),
            stderr_buf.size(),
            result.truncated.stdout,
            result.truncated.stderr,
        )
        reporter.report(1.0, "SSH command completed")
        return result


async def _close_session(session: Any, profile_name: str) -> None:
    try:
        await session.close()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to close SSH session profile=%s: %s", profile_name, exc)
