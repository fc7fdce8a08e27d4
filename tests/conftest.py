from __future__ import annotations

import os
import sys
from typing import Any, Callable, Dict

import pytest


# When running via the `pytest` console script, Python sets `sys.path[0]` to the
# script location (e.g. `.venv/bin`) rather than the repo root. Ensure local
# top-level packages like `services/`, `core/`, `infra/` are importable.
_REPO_ROOT = os.path.dirname(os.path.dirname(__file__))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)


@pytest.fixture(autouse=True)
def _isolate_broker_env(monkeypatch):
    """Keep a developer's BROKER_* environment out of tests."""
    for key in list(os.environ):
        if key.startswith("BROKER"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def make_config() -> Callable[..., Any]:
    """Build a resolved BrokerConfig from a raw config dict."""
    from core.app_config import normalize_config
    from core.config import resolve_config

    def _make(raw: Dict[str, Any] | None = None, **kwargs: Any) -> Any:
        return resolve_config(normalize_config(dict(raw or {})), **kwargs)

    return _make
