from __future__ import annotations

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass
from typing import Iterable, Union

from .client import RemoteNode
from .errors import (
    AuthenticationError,
    CommandTimeoutError,
    HostUnreachableError,
    NodeConnectionError,
)

LOGGER = logging.getLogger("bftbench.ssh")

SSH_ERROR_STATUS = 255

_AUTH_MARKERS = (
    "permission denied",
    "host key verification failed",
    "too many authentication failures",
)
_UNREACHABLE_MARKERS = (
    "connection refused",
    "connection timed out",
    "operation timed out",
    "could not resolve hostname",
    "no route to host",
    "network is unreachable",
    "connection closed by",
    "connection reset by",
)


def default_connect_timeout() -> int:
    return int(os.environ.get("SSH_TIMEOUT", "30"))


@dataclass(frozen=True)
class CommandOutput:
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def ssh_command_args(
    user: str,
    key: str,
    host: str,
    port: int,
    command: str,
    connect_timeout: int = 30,
    program: str = "ssh",
) -> list[str]:
    return [
        program,
        "-i",
        key,
        "-p",
        str(port),
        f"{user}@{host}",
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        f"ConnectTimeout={connect_timeout}",
        "-o",
        "BatchMode=yes",
        command,
    ]


def format_ssh_command(user: str, key: str, host: str, port: int, command: str, connect_timeout: int = 30) -> str:
    return " ".join(shlex.quote(arg) for arg in ssh_command_args(user, key, host, port, command, connect_timeout))


def classify_ssh_failure(node: str, stderr: str) -> NodeConnectionError | None:
    """Map ssh's own diagnostics to a connection error; None if the remote command failed."""
    lowered = stderr.lower()
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthenticationError(node, stderr.strip())
    if any(marker in lowered for marker in _UNREACHABLE_MARKERS):
        return HostUnreachableError(node, stderr.strip())
    return None


class SshConnectionManager:
    """Run shell commands on remote nodes through the system ``ssh`` client."""

    def __init__(
        self,
        connect_timeout: int | None = None,
        command_timeout: float = 600.0,
        retries: int = 3,
        backoff: float = 1.0,
        max_backoff: float = 10.0,
        program: str = "ssh",
    ) -> None:
        self.connect_timeout = default_connect_timeout() if connect_timeout is None else connect_timeout
        self.command_timeout = command_timeout
        self.retries = retries
        self._backoff = backoff
        self._max_backoff = max_backoff
        self._program = program

    def command_args(self, node: RemoteNode, command: str) -> list[str]:
        return ssh_command_args(
            user=node.ssh_user,
            key=node.ssh_key_path,
            host=node.host,
            port=node.ssh_port,
            command=command,
            connect_timeout=self.connect_timeout,
            program=self._program,
        )

    async def execute(self, node: RemoteNode, command: str, timeout: float | None = None) -> CommandOutput:
        """Execute ``command`` on ``node``; a non-zero remote exit is returned, not raised."""
        backoff = self._backoff
        attempt = 0
        while True:
            try:
                return await self._execute_once(node, command, timeout or self.command_timeout)
            except HostUnreachableError:
                attempt += 1
                if attempt > self.retries:
                    raise
                LOGGER.warning(
                    "%s unreachable (attempt %d/%d), retrying in %.1fs",
                    node.name,
                    attempt,
                    self.retries,
                    backoff,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 1.5, self._max_backoff)

    async def execute_many(
        self,
        commands: Iterable[tuple[RemoteNode, str]],
        timeout: float | None = None,
    ) -> list[tuple[RemoteNode, Union[CommandOutput, BaseException]]]:
        pairs = list(commands)
        outputs = await asyncio.gather(
            *(self.execute(node, command, timeout) for node, command in pairs),
            return_exceptions=True,
        )
        return [(node, output) for (node, _), output in zip(pairs, outputs)]

    async def _execute_once(self, node: RemoteNode, command: str, timeout: float) -> CommandOutput:
        LOGGER.debug("[%s] $ %s", node.name, command)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command_args(node, command),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise HostUnreachableError(node.name, f"failed to launch ssh: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CommandTimeoutError(node.name, command, timeout) from exc

        output = CommandOutput(
            exit_status=proc.returncode if proc.returncode is not None else SSH_ERROR_STATUS,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if output.exit_status == SSH_ERROR_STATUS:
            error = classify_ssh_failure(node.name, output.stderr)
            if error is not None:
                raise error
        return output


__all__ = [
    "CommandOutput",
    "SshConnectionManager",
    "classify_ssh_failure",
    "format_ssh_command",
    "ssh_command_args",
]
