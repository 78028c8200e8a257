# hubnet/remote/executor.py
"""
Remote Execution

The deployment code only talks to the RemoteExecutor port:
- execute(host, command, timeout) -> CommandResult
- transfer(host, content, remote_path, timeout)

SSHExecutor implements it by shelling out to the ssh binary. Every call is
bounded by a timeout; a timeout is a failure, never a hang.
"""

import asyncio
import logging
import posixpath
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from ..exceptions import RemoteExecutionFailure

logger = logging.getLogger(__name__)

# ssh reserves 255 for its own (connection/auth) errors
SSH_TRANSPORT_ERROR = 255


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteExecutor(ABC):
    """Run commands on, and copy files to, a remote host"""

    @abstractmethod
    async def execute(self, host: str, command: str, timeout: Optional[float] = None) -> CommandResult:
        """
        Run a shell command on `host`

        Non-zero exit codes are returned, not raised.

        Raises:
            RemoteExecutionFailure: transport failure or timeout
        """

    @abstractmethod
    async def transfer(
        self,
        host: str,
        content: str,
        remote_path: str,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Write `content` to `remote_path` on `host`

        Raises:
            RemoteExecutionFailure: the file could not be written
        """


class SSHExecutor(RemoteExecutor):
    """
    RemoteExecutor over the OpenSSH client

    Runs non-interactively (BatchMode), so hosts must be reachable with key
    based authentication.
    """

    def __init__(
        self,
        ssh_binary: str = "ssh",
        user: Optional[str] = "root",
        connect_timeout: int = 10,
        default_timeout: float = 30.0,
        extra_options: Optional[List[str]] = None,
    ):
        self.ssh_binary = ssh_binary
        self.user = user
        self.connect_timeout = connect_timeout
        self.default_timeout = default_timeout
        self.extra_options = list(extra_options or [])

    @classmethod
    def from_settings(cls, settings) -> "SSHExecutor":
        return cls(
            ssh_binary=settings.SSH_BINARY,
            user=settings.SSH_USER,
            connect_timeout=settings.SSH_CONNECT_TIMEOUT,
            default_timeout=settings.REMOTE_COMMAND_TIMEOUT,
        )

    def _target(self, host: str) -> str:
        if self.user and "@" not in host:
            return f"{self.user}@{host}"
        return host

    def _argv(self, host: str, command: str) -> List[str]:
        return [
            self.ssh_binary,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            *self.extra_options,
            self._target(host),
            command,
        ]

    async def _run(
        self,
        host: str,
        command: str,
        stdin: Optional[bytes],
        timeout: Optional[float],
    ) -> CommandResult:
        limit = timeout if timeout is not None else self.default_timeout

        try:
            process = await asyncio.create_subprocess_exec(
                *self._argv(host, command),
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RemoteExecutionFailure(
                f"Cannot start {self.ssh_binary}: {e}", host=host, command=command
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(input=stdin), timeout=limit)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            logger.error(f"[{host}] timed out after {limit}s: {command}")
            raise RemoteExecutionFailure(
                f"Command timed out after {limit}s", host=host, command=command
            ) from e

        result = CommandResult(
            exit_code=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

        if result.exit_code == SSH_TRANSPORT_ERROR:
            logger.error(f"[{host}] ssh transport error: {result.stderr.strip()}")
            raise RemoteExecutionFailure(
                f"SSH connection to {host} failed: {result.stderr.strip()}",
                host=host,
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )

        logger.debug(f"[{host}] exit={result.exit_code}: {command}")
        return result

    async def execute(self, host: str, command: str, timeout: Optional[float] = None) -> CommandResult:
        return await self._run(host, command, None, timeout)

    async def transfer(
        self,
        host: str,
        content: str,
        remote_path: str,
        timeout: Optional[float] = None,
    ) -> None:
        directory = posixpath.dirname(remote_path) or "."
        command = (
            f"umask 077 && mkdir -p {shlex.quote(directory)} "
            f"&& cat > {shlex.quote(remote_path)}"
        )
        result = await self._run(host, command, content.encode("utf-8"), timeout)
        if not result.ok:
            raise RemoteExecutionFailure(
                f"Failed to write {remote_path}: {result.stderr.strip()}",
                host=host,
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        logger.info(f"[{host}] wrote {remote_path} ({len(content)} bytes)")
