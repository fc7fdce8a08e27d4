from __future__ import annotations

import json
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from core.config_defaults import default_config
from core.errors import ConfigurationError
from core.utils import REPO_ROOT

CONFIG_TOML_ENV = "BROKER_CONFIG_TOML"
CONFIG_JSON_ENV = "BROKER_CONFIG_JSON"
ENV_PREFIX = "BROKER__"


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Failed to parse TOML config from {path}: {exc}") from exc


def _parse_env_value(raw: str) -> Any:
    value = (raw or "").strip()
    if value == "":
        return ""
    try:
        return json.loads(value)
    except Exception:
        return value


def deep_merge(target: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in (src or {}).items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            deep_merge(target[key], value)
        else:
            target[key] = value
    return target


def apply_inline_json(cfg: Dict[str, Any], *, env_name: str = CONFIG_JSON_ENV) -> Dict[str, Any]:
    raw = os.environ.get(env_name)
    if not raw:
        return cfg
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Failed to parse JSON config from {env_name}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{env_name} must contain a JSON object")
    return deep_merge(cfg, data)


def apply_env_overrides(
    cfg: Dict[str, Any],
    *,
    prefix: str = ENV_PREFIX,
    separator: str = "__",
) -> Dict[str, Any]:
    for env_key, env_val in os.environ.items():
        if not env_key.startswith(prefix):
            continue
        path = env_key[len(prefix) :].split(separator)
        path = [p.strip().lower() for p in path if p.strip()]
        if not path:
            continue
        cursor = cfg
        for segment in path[:-1]:
            node = cursor.get(segment)
            if not isinstance(node, dict):
                node = {}
                cursor[segment] = node
            cursor = node
        cursor[path[-1]] = _parse_env_value(env_val)
    return cfg


def apply_defaults(cfg: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    def _deep_apply(target: Dict[str, Any], src: Dict[str, Any]) -> None:
        for key, value in (src or {}).items():
            if key not in target or target[key] is None:
                if isinstance(value, dict):
                    target[key] = {}
                    _deep_apply(target[key], value)
                else:
                    target[key] = value
                continue
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                _deep_apply(target[key], value)

    _deep_apply(cfg, defaults or {})
    return cfg


def config_path_from_env() -> Path:
    return Path(os.environ.get(CONFIG_TOML_ENV) or (REPO_ROOT / "config.toml"))


def load_raw_config(
    path: Optional[Path] = None,
    *,
    env_prefix: str = ENV_PREFIX,
    env_separator: str = "__",
) -> Tuple[Dict[str, Any], Path]:
    """Assemble the raw config dict and the directory relative secret paths resolve against."""
    cfg: Dict[str, Any] = {}
    cfg_path = path or config_path_from_env()
    base_dir = Path.cwd()
    if cfg_path.exists():
        cfg = _load_toml(cfg_path)
        base_dir = cfg_path.resolve().parent
    elif path is not None or os.environ.get(CONFIG_TOML_ENV):
        raise ConfigurationError(f"Config file not found: {cfg_path}")

    apply_inline_json(cfg)
    apply_env_overrides(cfg, prefix=env_prefix, separator=env_separator)
    apply_defaults(cfg, default_config())
    return cfg, base_dir
