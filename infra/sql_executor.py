from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.cancellation import CancellationToken, run_cancellable
from core.config import BrokerConfig, get_config
from core.errors import BrokerError, ExecutionTimeoutError, NotFoundError, OperationCancelledError
from core.policy import check_query
from core.progress import as_reporter
from core.time_utils import elapsed_ms
from core.utils import clamp_limit
from infra.concurrency import ConcurrencyLimiter
from infra.pg_client import PsycopgConnector, QueryOutcome

logger = logging.getLogger("SqlExecutor")


@dataclass
class QueryOptions:
    timeout_ms: Optional[int] = None
    row_limit: Optional[int] = None
    request_id: Optional[str] = None
    tool: Optional[str] = None


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    truncated: bool = False
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RelationalQueryExecutor:
    """Runs one policy-checked statement per call on a fresh connection.

    ``statement_timeout`` is set on the session before the data query so the
    server enforces the same ceiling as the client-side wall-clock timer.
    """

    def __init__(
        self,
        *,
        config_provider: Callable[[], BrokerConfig] = get_config,
        connector: Any = None,
        limiter: Optional[ConcurrencyLimiter] = None,
    ) -> None:
        self._config_provider = config_provider
        self._connector = connector or PsycopgConnector()
        self.limiter = limiter or ConcurrencyLimiter()

    async def execute(
        self,
        profile_name: str,
        query: str,
        parameters: Optional[Sequence[Any]] = None,
        options: Optional[QueryOptions] = None,
        *,
        cancellation: Optional[CancellationToken] = None,
        progress: Any = None,
    ) -> QueryResult:
        opts = options or QueryOptions()
        reporter = as_reporter(progress, source="db")
        config = self._config_provider()
        profile = config.database_profiles.get(profile_name)
        if profile is None:
            raise NotFoundError(f"Database profile '{profile_name}' not found")

        check_query(query, profile.allowed_statement_patterns)

        timeout_ms = clamp_limit(opts.timeout_ms, profile.max_execution_ms)
        row_limit = clamp_limit(opts.row_limit, profile.max_rows)

        reporter.report(0.0, "Waiting for database availability")
        try:
            slot = await self.limiter.acquire(profile_name, profile.max_concurrent, cancellation)
        except OperationCancelledError:
            reporter.report(1.0, "Database query cancelled")
            raise

        async with slot:
            session = self._connector.open(profile.connection_string)
            start = time.monotonic()
            aborted = False
            logger.info(
                "Executing database query profile=%s request_id=%s tool=%s timeout_ms=%s row_limit=%s",
                profile_name,
                opts.request_id,
                opts.tool,
                timeout_ms,
                row_limit,
            )
            logger.debug("Query text profile=%s: %s", profile_name, query)

            async def _run() -> QueryOutcome:
                reporter.report(0.1, "Connecting to database")
                await session.connect()
                reporter.report(0.3, "Applying session limits")
                await session.set_statement_timeout(timeout_ms)
                reporter.report(0.6, "Executing query")
                return await session.execute(query, parameters, row_limit=row_limit)

            try:
                outcome = await asyncio.wait_for(
                    run_cancellable(_run(), cancellation, message="Database query cancelled"),
                    timeout=timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                aborted = True
                reporter.report(1.0, "Database query timed out")
                logger.warning(
                    "Database query timed out profile=%s request_id=%s timeout_ms=%s",
                    profile_name,
                    opts.request_id,
                    timeout_ms,
                )
                raise ExecutionTimeoutError(f"Database query timed out after {timeout_ms} ms") from None
            except OperationCancelledError:
                aborted = True
                reporter.report(1.0, "Database query cancelled")
                logger.info("Database query cancelled profile=%s request_id=%s", profile_name, opts.request_id)
                raise
            except asyncio.CancelledError:
                aborted = True
                raise
            except BrokerError as exc:
                if cancellation is not None and cancellation.cancelled:
                    aborted = True
                    reporter.report(1.0, "Database query cancelled")
                    raise OperationCancelledError("Database query cancelled") from exc
                reporter.report(1.0, "Database query failed")
                logger.error(
                    "Database query failed profile=%s request_id=%s tool=%s error=%s",
                    profile_name,
                    opts.request_id,
                    opts.tool,
                    exc,
                )
                raise
            finally:
                await _close_session(session, profile_name, abort=aborted)

        rows = list(outcome.rows)[:row_limit]
        row_count = max(int(outcome.row_count), len(rows))
        result = QueryResult(
            rows=rows,
            row_count=row_count,
            truncated=outcome.returns_rows and row_count > len(rows),
            duration_ms=elapsed_ms(start),
        )
        logger.info(
            "Database query completed profile=%s request_id=%s tool=%s row_count=%s truncated=%s duration_ms=%s",
            profile_name,
            opts.request_id,
            opts.tool,
            result.row_count,
            result.truncated,
            result.duration_ms,
        )
        reporter.report(1.0, "Database query completed")
        return result


async def _close_session(session: Any, profile_name: str, *, abort: bool) -> None:
    try:
        await session.close(abort=abort)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to close database session profile=%s: %s", profile_name, exc)
