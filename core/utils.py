from pathlib import Path
import sys, asyncio
import re
from typing import Any, Optional

REPO_ROOT = Path(__file__).resolve().parents[1]
_WHITESPACE_RE = re.compile(r"\s+")
_LOOPBACK_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})

def set_loop_policy():
    if sys.platform.startswith("win"):
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

def safe_str(obj: Any) -> str:
    """Return str(obj), or an empty string for None."""
    if obj is None:
        return ""
    return str(obj)

def slugify(value: Any) -> str:
    """
    Lowercase a label and collapse whitespace runs to single hyphens.
    "Golden Retriever" -> "golden-retriever"
    """
    return _WHITESPACE_RE.sub("-", safe_str(value)).lower()

def clamp_limit(requested: Optional[int], ceiling: int) -> int:
    """
    Clamp a per-call override to a profile ceiling.

    Overrides may only tighten: a missing or non-positive value falls back
    to the ceiling, anything larger is cut down to it.
    """
    ceiling = int(ceiling)
    if requested is None:
        return ceiling
    value = int(requested)
    if value <= 0:
        return ceiling
    return min(value, ceiling)

def is_loopback_host(host: Any) -> bool:
    return safe_str(host).strip().lower() in _LOOPBACK_HOSTS
