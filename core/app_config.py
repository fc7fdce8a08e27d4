from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError, model_validator

from core.config_defaults import (
    DEFAULT_DB_MAX_CONCURRENT,
    DEFAULT_DB_MAX_EXECUTION_MS,
    DEFAULT_DB_MAX_ROWS,
    DEFAULT_LOCAL_TEST_MODE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_SERVER_NAME,
    DEFAULT_SERVER_VERSION,
    DEFAULT_SSH_HOST_KEY_POLICY,
    DEFAULT_SSH_PORT,
    DEFAULT_TRAINING_TIMEOUT_MS,
    default_config,
)
from core.config_loader import apply_defaults, apply_env_overrides, load_raw_config
from core.errors import ConfigurationError


class InlineSecret(BaseModel):
    model_config = ConfigDict(extra="forbid")
    value: str


class EnvSecret(BaseModel):
    model_config = ConfigDict(extra="forbid")
    env: str
    optional: bool = False


class FileSecret(BaseModel):
    model_config = ConfigDict(extra="forbid")
    path: str
    encoding: Literal["utf8", "base64"] = "utf8"
    optional: bool = False


SecretSpec = Union[str, InlineSecret, EnvSecret, FileSecret]


class CommandPattern(BaseModel):
    model_config = ConfigDict(extra="forbid")
    pattern: str
    description: Optional[str] = None


class SshPolicyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    allowed_commands: Optional[List[Union[str, CommandPattern]]] = None
    max_execution_ms: Optional[PositiveInt] = None
    max_output_bytes: Optional[PositiveInt] = None
    max_concurrent: Optional[PositiveInt] = None


class SshProfileConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    host: str
    port: PositiveInt = DEFAULT_SSH_PORT
    username: str
    password: Optional[SecretSpec] = None
    private_key: Optional[SecretSpec] = None
    passphrase: Optional[SecretSpec] = None
    policy: SshPolicyConfig = Field(default_factory=SshPolicyConfig)

    @model_validator(mode="after")
    def _require_auth(self) -> "SshProfileConfig":
        if self.password is None and self.private_key is None:
            raise ValueError("SSH profile must provide either a password or a private_key")
        return self


class DatabaseProfileConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    connection_string: SecretSpec
    allowed_statements: Optional[List[str]] = None
    max_rows: PositiveInt = DEFAULT_DB_MAX_ROWS
    max_execution_ms: PositiveInt = DEFAULT_DB_MAX_EXECUTION_MS
    max_concurrent: PositiveInt = DEFAULT_DB_MAX_CONCURRENT


class TrainingConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    default_command_template: Optional[str] = None
    default_timeout_ms: PositiveInt = DEFAULT_TRAINING_TIMEOUT_MS


class SshClientConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    host_key_policy: Literal["reject", "warning", "auto_add"] = DEFAULT_SSH_HOST_KEY_POLICY


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    level: str = DEFAULT_LOG_LEVEL


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    name: str = DEFAULT_SERVER_NAME
    version: str = DEFAULT_SERVER_VERSION


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    local_test_mode: bool = DEFAULT_LOCAL_TEST_MODE
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    ssh: SshClientConfig = Field(default_factory=SshClientConfig)
    training: TrainingConfig = Field(default_factory=TrainingConfig)
    ssh_profiles: Dict[str, SshProfileConfig] = Field(default_factory=dict)
    database_profiles: Dict[str, DatabaseProfileConfig] = Field(default_factory=dict)


def _validate(raw: Dict[str, Any], *, origin: str) -> AppConfig:
    try:
        return AppConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration (origin: {origin}): {exc}") from exc


def load_app_config(path: Optional[Path] = None) -> tuple[AppConfig, Path]:
    raw, base_dir = load_raw_config(path=path)
    return _validate(raw, origin=str(path or base_dir)), base_dir


def normalize_config(config: Optional[AppConfig | Dict[str, Any]]) -> AppConfig:
    if isinstance(config, AppConfig):
        return config
    if config is None:
        config = {}
    if isinstance(config, dict):
        raw = apply_env_overrides(dict(config))
        raw = apply_defaults(raw, default_config())
        return _validate(raw, origin="dict")
    raise TypeError("config must be AppConfig, dict, or None")
