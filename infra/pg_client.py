from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import dict_row

from core.config_defaults import DEFAULT_DB_CONNECT_TIMEOUT_SEC
from core.errors import ExecutionTimeoutError, TransportError

logger = logging.getLogger("PgClient")

# Raw cursors bind positional ``$1``-style placeholders server-side, so
# parameters are never interpolated into the statement text.
_SET_STATEMENT_TIMEOUT = "SELECT set_config('statement_timeout', $1, false)"


@dataclass
class QueryOutcome:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    returns_rows: bool = True


def _wrap(exc: psycopg.Error, action: str) -> Exception:
    if isinstance(exc, pg_errors.QueryCanceled):
        return ExecutionTimeoutError(f"statement cancelled by server: {exc}")
    return TransportError(f"{action} failed: {exc}")


class PsycopgQuerySession:
    def __init__(self, conninfo: str, *, connect_timeout: int = DEFAULT_DB_CONNECT_TIMEOUT_SEC) -> None:
        self._conninfo = conninfo
        self._connect_timeout = int(connect_timeout)
        self._conn: Optional[psycopg.AsyncConnection[Dict[str, Any]]] = None
        self._closed = False

    async def connect(self) -> None:
        try:
            self._conn = await psycopg.AsyncConnection.connect(
                self._conninfo,
                autocommit=True,
                row_factory=dict_row,
                cursor_factory=psycopg.AsyncRawCursor,
                connect_timeout=self._connect_timeout,
            )
        except psycopg.Error as exc:
            raise _wrap(exc, "database connection") from exc
        if self._closed:
            await self._conn.close()
            raise TransportError("database session closed while connecting")

    def _require_conn(self) -> psycopg.AsyncConnection[Dict[str, Any]]:
        if self._conn is None or self._conn.closed:
            raise TransportError("database session is not connected")
        return self._conn

    async def set_statement_timeout(self, timeout_ms: int) -> None:
        conn = self._require_conn()
        try:
            await conn.execute(_SET_STATEMENT_TIMEOUT, (str(int(timeout_ms)),))
        except psycopg.Error as exc:
            raise _wrap(exc, "applying statement timeout") from exc

    async def execute(
        self,
        query: str,
        parameters: Optional[Sequence[Any]],
        *,
        row_limit: int,
    ) -> QueryOutcome:
        conn = self._require_conn()
        try:
            async with conn.cursor() as cur:
                await cur.execute(query, list(parameters) if parameters else None)
                if cur.description is None:
                    return QueryOutcome(rows=[], row_count=max(cur.rowcount, 0), returns_rows=False)
                rows = await cur.fetchmany(row_limit) if row_limit > 0 else []
                row_count = cur.rowcount if cur.rowcount >= 0 else len(rows)
                return QueryOutcome(rows=list(rows), row_count=row_count)
        except psycopg.Error as exc:
            raise _wrap(exc, "query") from exc

    async def close(self, *, abort: bool = False) -> None:
        self._closed = True
        conn, self._conn = self._conn, None
        if conn is None or conn.closed:
            return
        if abort:
            try:
                await conn.cancel_safe()
            except psycopg.Error as exc:
                logger.debug("Best-effort statement cancel failed: %s", exc)
        await conn.close()


class PsycopgConnector:
    def __init__(self, *, connect_timeout: int = DEFAULT_DB_CONNECT_TIMEOUT_SEC) -> None:
        self.connect_timeout = connect_timeout

    def open(self, conninfo: str) -> PsycopgQuerySession:
        return PsycopgQuerySession(conninfo, connect_timeout=self.connect_timeout)
