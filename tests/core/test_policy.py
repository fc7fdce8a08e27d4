import logging
import re

import pytest

from core.errors import PolicyViolationError
from core.policy import (
    check_query,
    ensure_command_allowed,
    ensure_query_allowed,
    matches_allowlist,
    validate_query_safety,
)


def test_empty_allowlist_is_unrestricted() -> None:
    assert matches_allowlist("rm -rf /tmp/x", []) is True
    assert matches_allowlist("rm -rf /tmp/x", None) is True
    ensure_command_allowed("anything", ())


def test_allowlist_uses_search_semantics() -> None:
    patterns = [re.compile(r"echo")]
    assert matches_allowlist("sudo echo hi", patterns) is True
    assert matches_allowlist("ls", patterns) is False
    assert matches_allowlist("ls -la", ["^ls\\b"]) is True


def test_command_not_matching_raises_generic_message(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="PolicyGate"):
        with pytest.raises(PolicyViolationError) as exc_info:
            ensure_command_allowed("rm -rf /", [re.compile(r"^echo\b")])

    assert exc_info.value.code == "policy_violation"
    assert "rm -rf" not in exc_info.value.message
    assert "Command rejected" in caplog.text


def test_query_allowlist_is_checked() -> None:
    patterns = [re.compile(r"^\s*select\b", re.IGNORECASE)]
    ensure_query_allowed("SELECT 1", patterns)
    with pytest.raises(PolicyViolationError):
        ensure_query_allowed("DELETE FROM users", patterns)


@pytest.mark.parametrize(
    "query",
    [
        "",
        "   \n\t",
        "SELECT 1 -- trailing comment",
        "SELECT /* hidden */ 1",
        "SELECT 1; SELECT 2",
        "SELECT 1;;",
        "SELECT 1; DROP TABLE users;",
    ],
)
def test_unsafe_queries_are_rejected(query: str) -> None:
    with pytest.raises(PolicyViolationError) as exc_info:
        validate_query_safety(query)
    assert exc_info.value.message == "Query is not permitted by policy"


@pytest.mark.parametrize(
    "query",
    [
        "SELECT 1",
        "SELECT 1;",
        "SELECT 1;   \n",
        "SELECT '--not a comment' AS a",
        "SELECT '/* nope */; still text' AS a",
        'SELECT "odd--name" FROM t',
        "SELECT 'it''s fine; really'",
        "SELECT 'escaped \\' quote; -- still inside'",
        "SELECT 5 - -3",
    ],
)
def test_safe_queries_are_accepted(query: str) -> None:
    validate_query_safety(query)


def test_check_query_runs_safety_before_allowlist() -> None:
    patterns = [re.compile(r"^\s*select\b", re.IGNORECASE)]
    check_query("select * from t where id = $1", patterns)
    with pytest.raises(PolicyViolationError):
        check_query("select 1; delete from t", patterns)
    with pytest.raises(PolicyViolationError):
        check_query("update t set a = 1", patterns)
