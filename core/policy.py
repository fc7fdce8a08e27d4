from __future__ import annotations

import logging
import re
from typing import Iterable, Optional, Sequence, Union

from core.errors import PolicyViolationError

logger = logging.getLogger("PolicyGate")

PatternLike = Union[str, re.Pattern[str]]

COMMAND_NOT_PERMITTED = "Command is not permitted by policy"
QUERY_NOT_PERMITTED = "Query is not permitted by policy"


def _compiled(patterns: Iterable[PatternLike]) -> list[re.Pattern[str]]:
    return [p if isinstance(p, re.Pattern) else re.compile(p) for p in patterns]


def matches_allowlist(text: str, patterns: Optional[Sequence[PatternLike]]) -> bool:
    """An empty or missing allowlist is unrestricted; otherwise any pattern must match."""
    if not patterns:
        return True
    return any(pattern.search(text) for pattern in _compiled(patterns))


def ensure_command_allowed(command: str, patterns: Optional[Sequence[PatternLike]]) -> None:
    if not matches_allowlist(command, patterns):
        logger.warning("Command rejected: no allowlist pattern matched")
        raise PolicyViolationError(COMMAND_NOT_PERMITTED)


def ensure_query_allowed(query: str, patterns: Optional[Sequence[PatternLike]]) -> None:
    if not matches_allowlist(query, patterns):
        logger.warning("Query rejected: no allowlist pattern matched")
        raise PolicyViolationError(QUERY_NOT_PERMITTED)


def _reject_query(reason: str) -> PolicyViolationError:
    # The caller only sees the generic message; the rule stays in the server log.
    logger.warning("Query rejected: %s", reason)
    return PolicyViolationError(QUERY_NOT_PERMITTED)


def validate_query_safety(query: str) -> None:
    """Reject empty input, SQL comments and multiple statements.

    Comment markers and semicolons inside single- or double-quoted literals
    are ignored; a quote preceded by a backslash does not open or close a
    literal. One trailing semicolon followed only by whitespace is accepted.
    """
    trimmed = (query or "").strip()
    if not trimmed:
        raise _reject_query("empty query")

    in_single = False
    in_double = False
    semicolon_index: Optional[int] = None

    for i, char in enumerate(trimmed):
        escaped = i > 0 and trimmed[i - 1] == "\\"
        nxt = trimmed[i + 1] if i + 1 < len(trimmed) else ""

        if char == "'" and not escaped and not in_double:
            in_single = not in_single
            continue
        if char == '"' and not escaped and not in_single:
            in_double = not in_double
            continue
        if in_single or in_double:
            continue

        if char == "-" and nxt == "-":
            raise _reject_query("inline comment")
        if char == "/" and nxt == "*":
            raise _reject_query("block comment")
        if char == ";":
            if semicolon_index is not None:
                raise _reject_query("multiple statements")
            semicolon_index = i

    if semicolon_index is not None and trimmed[semicolon_index + 1 :].strip():
        raise _reject_query("multiple statements")


def check_query(query: str, patterns: Optional[Sequence[PatternLike]]) -> None:
    """Full relational gate: safety scan first, then the allowlist."""
    validate_query_safety(query)
    ensure_query_allowed(query, patterns)
