from __future__ import annotations

from typing import Any, Dict


DEFAULT_SERVER_NAME = "exec-broker"
DEFAULT_SERVER_VERSION = "0.1.0"

DEFAULT_LOG_LEVEL = "INFO"

# Policy bypass for loopback hosts; keep off outside local development.
DEFAULT_LOCAL_TEST_MODE = False

DEFAULT_SSH_PORT = 22
DEFAULT_SSH_MAX_EXECUTION_MS = 5 * 60 * 1000
DEFAULT_SSH_MAX_OUTPUT_BYTES = 512 * 1024
DEFAULT_SSH_MAX_CONCURRENT = 1
DEFAULT_SSH_HOST_KEY_POLICY = "warning"
DEFAULT_SSH_CONNECT_TIMEOUT_SEC = 30.0

DEFAULT_DB_MAX_ROWS = 500
DEFAULT_DB_MAX_EXECUTION_MS = 30_000
DEFAULT_DB_MAX_CONCURRENT = 1
DEFAULT_DB_CONNECT_TIMEOUT_SEC = 30

DEFAULT_TRAINING_TIMEOUT_MS = 300_000


def default_config() -> Dict[str, Any]:
    return {
        "local_test_mode": DEFAULT_LOCAL_TEST_MODE,
        "logging": {"level": DEFAULT_LOG_LEVEL},
        "server": {
            "name": DEFAULT_SERVER_NAME,
            "version": DEFAULT_SERVER_VERSION,
        },
        "ssh": {"host_key_policy": DEFAULT_SSH_HOST_KEY_POLICY},
        "training": {
            "default_command_template": None,
            "default_timeout_ms": DEFAULT_TRAINING_TIMEOUT_MS,
        },
        "ssh_profiles": {},
        "database_profiles": {},
    }
