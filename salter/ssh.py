"""Remote shell transport over SSH."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import Protocol

import paramiko
from loguru import logger

from salter.constants import SSH_CONNECT_TIMEOUT
from salter.exceptions import RemoteCommandError


class Shell(Protocol):
    """A command channel to one instance."""

    def run(self, command: str) -> int: ...

    def run_output(self, command: str) -> bytes: ...

    def upload(self, path: str, data: bytes) -> None: ...

    def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class SSHConfig:
    """SSH connection configuration."""

    host: str
    username: str
    pkey: paramiko.PKey
    port: int = 22
    timeout: float = SSH_CONNECT_TIMEOUT


def upload_command(path: str) -> str:
    """Command that writes stdin to ``path`` as root."""
    return f"/usr/bin/sudo sh -c {shlex.quote(f'/bin/cat > {shlex.quote(path)}')}"


class SSHSession:
    """Blocking SSH session. Connects on construction."""

    __slots__ = ("_client", "_host")

    def __init__(self, config: SSHConfig) -> None:
        logger.debug(f"SSH: connecting to {config.username}@{config.host}:{config.port}")
        self._host = config.host
        self._client = paramiko.SSHClient()
        self._client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            self._client.connect(
                hostname=config.host,
                port=config.port,
                username=config.username,
                pkey=config.pkey,
                timeout=config.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except Exception:
            self._client.close()
            raise
        logger.debug(f"SSH: connected to {config.host}")

    def _exec(self, command: str, stdin_data: bytes | None = None) -> tuple[int, bytes, bytes]:
        logger.debug(f"SSH {self._host}: {command}")
        stdin, stdout, stderr = self._client.exec_command(command)
        if stdin_data is not None:
            stdin.write(stdin_data)
            stdin.flush()
            stdin.channel.shutdown_write()
        out = stdout.read()
        err = stderr.read()
        code = stdout.channel.recv_exit_status()
        logger.debug(f"SSH {self._host}: exit_code={code}")
        return code, out, err

    def run(self, command: str) -> int:
        """Run a command. Non-zero exit raises ``RemoteCommandError``."""
        code, out, err = self._exec(command)
        if code != 0:
            raise RemoteCommandError(command, code, (err or out).decode(errors="replace"))
        return code

    def run_output(self, command: str) -> bytes:
        """Run a command and return its stdout."""
        code, out, err = self._exec(command)
        if code != 0:
            raise RemoteCommandError(command, code, (err or out).decode(errors="replace"))
        return out

    def upload(self, path: str, data: bytes) -> None:
        """Write ``data`` to a remote path via sudo."""
        command = upload_command(path)
        code, out, err = self._exec(command, stdin_data=data)
        if code != 0:
            raise RemoteCommandError(command, code, (err or out).decode(errors="replace"))

    def close(self) -> None:
        self._client.close()


__all__ = [
    "SSHConfig",
    "SSHSession",
    "Shell",
    "upload_command",
]
