"""paramiko-backed SSH transport.

paramiko is blocking, so every network step runs in a worker thread via
``asyncio.to_thread``. ``close()`` may be awaited at any time; closing the
channel and client unblocks a worker thread still pumping output.
"""

from __future__ import annotations

import asyncio
import io
import logging
import shlex
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

import paramiko

from core.config_defaults import DEFAULT_SSH_CONNECT_TIMEOUT_SEC
from core.errors import ConfigurationError, TransportError

logger = logging.getLogger("SshClient")

RECV_CHUNK_BYTES = 32 * 1024
POLL_INTERVAL_SEC = 0.05

ChunkSink = Callable[[bytes], None]

_HOST_KEY_POLICIES = {
    "reject": paramiko.RejectPolicy,
    "warning": paramiko.WarningPolicy,
    "auto_add": paramiko.AutoAddPolicy,
}

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


@dataclass
class SshConnectParams:
    host: str
    port: int
    username: str
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)
    passphrase: Optional[str] = field(default=None, repr=False)
    connect_timeout_sec: float = DEFAULT_SSH_CONNECT_TIMEOUT_SEC

    @property
    def auth_method(self) -> str:
        return "private_key" if self.private_key else "password"


@dataclass
class SshExitStatus:
    exit_code: Optional[int]
    # paramiko exposes no exit-signal request, so ParamikoSshSession leaves this unset.
    signal: Optional[str] = None


def load_private_key(data: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    last_error: Optional[Exception] = None
    for key_cls in _KEY_CLASSES:
        try:
            return key_cls.from_private_key(io.StringIO(data), password=passphrase)
        except paramiko.PasswordRequiredException as exc:
            raise ConfigurationError("private key is encrypted and no passphrase was configured") from exc
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise ConfigurationError(f"unsupported or malformed private key: {last_error}")


def build_command(command: str, cwd: Optional[str] = None) -> str:
    if not cwd:
        return command
    return f"cd {shlex.quote(cwd)} && {command}"


class ParamikoSshSession:
    def __init__(self, params: SshConnectParams, *, host_key_policy: str = "warning") -> None:
        policy_cls = _HOST_KEY_POLICIES.get(host_key_policy)
        if policy_cls is None:
            raise ConfigurationError(f"unknown ssh host_key_policy '{host_key_policy}'")
        self.params = params
        self._client = paramiko.SSHClient()
        if host_key_policy != "auto_add":
            self._client.load_system_host_keys()
        self._client.set_missing_host_key_policy(policy_cls())
        self._channel: Optional[paramiko.Channel] = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def connect(self) -> None:
        await asyncio.to_thread(self._connect_blocking)

    def _connect_blocking(self) -> None:
        params = self.params
        kwargs: Dict[str, object] = {
            "hostname": params.host,
            "port": int(params.port),
            "username": params.username,
            "timeout": params.connect_timeout_sec,
            "banner_timeout": params.connect_timeout_sec,
            "auth_timeout": params.connect_timeout_sec,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if params.private_key:
            kwargs["pkey"] = load_private_key(params.private_key, params.passphrase)
        else:
            kwargs["password"] = params.password
        try:
            self._client.connect(**kwargs)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise TransportError(f"SSH connection to {params.host}:{params.port} failed: {exc}") from exc
        with self._lock:
            if self._closed:
                self._client.close()
                raise TransportError("SSH session closed while connecting")

    async def run(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        on_stdout: ChunkSink,
        on_stderr: ChunkSink,
    ) -> SshExitStatus:
        return await asyncio.to_thread(
            self._run_blocking, build_command(command, cwd), env, on_stdout, on_stderr
        )

    def _run_blocking(
        self,
        command: str,
        env: Optional[Mapping[str, str]],
        on_stdout: ChunkSink,
        on_stderr: ChunkSink,
    ) -> SshExitStatus:
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise TransportError("SSH session is not connected")
        try:
            channel = transport.open_session()
            with self._lock:
                if self._closed:
                    channel.close()
                    raise TransportError("SSH session closed before execution")
                self._channel = channel
            if env:
                channel.update_environment(dict(env))
            channel.exec_command(command)
            self._pump(channel, on_stdout, on_stderr)
            status = channel.recv_exit_status()
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise TransportError(f"SSH command failed: {exc}") from exc
        # paramiko reports -1 when the server closed without an exit status.
        return SshExitStatus(exit_code=None if status < 0 else status)

    def _pump(self, channel: paramiko.Channel, on_stdout: ChunkSink, on_stderr: ChunkSink) -> None:
        while True:
            idle = True
            if channel.recv_ready():
                data = channel.recv(RECV_CHUNK_BYTES)
                if data:
                    on_stdout(data)
                    idle = False
            if channel.recv_stderr_ready():
                data = channel.recv_stderr(RECV_CHUNK_BYTES)
                if data:
                    on_stderr(data)
                    idle = False
            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                return
            if idle:
                time.sleep(POLL_INTERVAL_SEC)

    async def close(self) -> None:
        await asyncio.to_thread(self._close_blocking)

    def _close_blocking(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            channel, self._channel = self._channel, None
        try:
            if channel is not None:
                channel.close()
        finally:
            self._client.close()


class ParamikoSshConnector:
    """Opens one session per executor call."""

    def __init__(self, *, host_key_policy: str = "warning") -> None:
        self.host_key_policy = host_key_policy

    def open(self, params: SshConnectParams) -> ParamikoSshSession:
        return ParamikoSshSession(params, host_key_policy=self.host_key_policy)
