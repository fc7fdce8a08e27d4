"""Resolved, read-only configuration snapshot.

The raw config is assembled from `config.toml` (or `BROKER_CONFIG_TOML`), then
`BROKER_CONFIG_JSON`, then env overrides (`BROKER__SECTION__KEY`), then
defaults. This module resolves secrets and compiles allowlist regexes into
frozen dataclasses. Consumers call `get_config()` on every operation so a
`refresh_config()` swap takes effect without restarting; a snapshot is never
mutated in place.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple, Union

from core.app_config import (
    AppConfig,
    CommandPattern,
    DatabaseProfileConfig,
    SshProfileConfig,
    load_app_config,
)
from core.config_defaults import (
    DEFAULT_SSH_MAX_CONCURRENT,
    DEFAULT_SSH_MAX_EXECUTION_MS,
    DEFAULT_SSH_MAX_OUTPUT_BYTES,
)
from core.errors import ConfigurationError
from core.secrets import resolve_secret

logger = logging.getLogger("BrokerConfig")


@dataclass(frozen=True)
class SshPolicy:
    allowed_command_patterns: Tuple[re.Pattern[str], ...] = ()
    max_execution_ms: int = DEFAULT_SSH_MAX_EXECUTION_MS
    max_output_bytes: int = DEFAULT_SSH_MAX_OUTPUT_BYTES
    max_concurrent: int = DEFAULT_SSH_MAX_CONCURRENT


@dataclass(frozen=True)
class SshProfile:
    host: str
    port: int
    username: str
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)
    passphrase: Optional[str] = field(default=None, repr=False)
    policy: SshPolicy = field(default_factory=SshPolicy)


@dataclass(frozen=True)
class DatabaseProfile:
    connection_string: str = field(repr=False)
    allowed_statement_patterns: Tuple[re.Pattern[str], ...]
    max_rows: int
    max_execution_ms: int
    max_concurrent: int


@dataclass(frozen=True)
class TrainingSettings:
    default_command_template: Optional[str]
    default_timeout_ms: int


@dataclass(frozen=True)
class BrokerConfig:
    ssh_profiles: Mapping[str, SshProfile]
    database_profiles: Mapping[str, DatabaseProfile]
    training: TrainingSettings
    ssh_host_key_policy: str
    log_level: str
    server_name: str
    server_version: str
    local_test_mode: bool = False


def _compile_patterns(
    entries: Optional[Iterable[Union[str, CommandPattern]]],
    *,
    label: str,
    flags: int = 0,
) -> Tuple[re.Pattern[str], ...]:
    compiled = []
    for index, entry in enumerate(entries or ()):
        pattern = entry if isinstance(entry, str) else entry.pattern
        try:
            compiled.append(re.compile(pattern, flags))
        except re.error as exc:
            raise ConfigurationError(f"Invalid regex '{pattern}' in {label}[{index}]: {exc}") from exc
    return tuple(compiled)


def _resolve_ssh_profile(name: str, profile: SshProfileConfig, base_dir: Path) -> SshProfile:
    label = f"ssh_profiles.{name}"
    policy = profile.policy
    resolved = SshProfile(
        host=profile.host,
        port=int(profile.port),
        username=profile.username,
        password=resolve_secret(profile.password, label=f"{label}.password", base_dir=base_dir),
        private_key=resolve_secret(profile.private_key, label=f"{label}.private_key", base_dir=base_dir),
        passphrase=resolve_secret(profile.passphrase, label=f"{label}.passphrase", base_dir=base_dir),
        policy=SshPolicy(
            allowed_command_patterns=_compile_patterns(
                policy.allowed_commands, label=f"{label}.policy.allowed_commands"
            ),
            max_execution_ms=int(policy.max_execution_ms or DEFAULT_SSH_MAX_EXECUTION_MS),
            max_output_bytes=int(policy.max_output_bytes or DEFAULT_SSH_MAX_OUTPUT_BYTES),
            max_concurrent=int(policy.max_concurrent or DEFAULT_SSH_MAX_CONCURRENT),
        ),
    )
    if not resolved.password and not resolved.private_key:
        # Optional secrets may legitimately be absent; the executor rejects the call.
        logger.warning("SSH profile %s resolved without password or private key", name)
    return resolved


def _resolve_database_profile(name: str, profile: DatabaseProfileConfig, base_dir: Path) -> DatabaseProfile:
    label = f"database_profiles.{name}"
    connection_string = resolve_secret(
        profile.connection_string, label=f"{label}.connection_string", base_dir=base_dir
    )
    if not connection_string:
        raise ConfigurationError(f"Database profile '{name}' resolved without a connection string")
    return DatabaseProfile(
        connection_string=connection_string,
        allowed_statement_patterns=_compile_patterns(
            profile.allowed_statements, label=f"{label}.allowed_statements", flags=re.IGNORECASE
        ),
        max_rows=int(profile.max_rows),
        max_execution_ms=int(profile.max_execution_ms),
        max_concurrent=int(profile.max_concurrent),
    )


def resolve_config(app_config: AppConfig, *, base_dir: Optional[Path] = None) -> BrokerConfig:
    root = base_dir or Path.cwd()
    ssh_profiles = {
        name: _resolve_ssh_profile(name, profile, root) for name, profile in app_config.ssh_profiles.items()
    }
    database_profiles = {
        name: _resolve_database_profile(name, profile, root)
        for name, profile in app_config.database_profiles.items()
    }
    return BrokerConfig(
        ssh_profiles=MappingProxyType(ssh_profiles),
        database_profiles=MappingProxyType(database_profiles),
        training=TrainingSettings(
            default_command_template=app_config.training.default_command_template,
            default_timeout_ms=int(app_config.training.default_timeout_ms),
        ),
        ssh_host_key_policy=app_config.ssh.host_key_policy,
        log_level=str(app_config.logging.level or "INFO").upper(),
        server_name=app_config.server.name,
        server_version=app_config.server.version,
        local_test_mode=bool(app_config.local_test_mode),
    )


def load_config(path: Optional[Path] = None) -> BrokerConfig:
    app_config, base_dir = load_app_config(path)
    return resolve_config(app_config, base_dir=base_dir)


@lru_cache(maxsize=1)
def get_config() -> BrokerConfig:
    return load_config()


def refresh_config() -> BrokerConfig:
    get_config.cache_clear()
    return get_config()
