from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from .client import Node, RemoteNode
from .errors import ConfigurationError


@dataclass(frozen=True)
class OrchestratorSettings:
    """Timing and cleanup knobs shared by local and remote orchestrators."""

    startup_timeout: float = 30.0
    health_poll_interval: float = 1.0
    max_health_poll_interval: float = 10.0
    scrape_interval: float = 15.0
    run_grace: float = 60.0
    request_timeout: float = 5.0
    max_in_flight: int = 1_000
    thorough_cleanup: bool = False

    def __post_init__(self) -> None:
        if self.startup_timeout <= 0:
            raise ConfigurationError("startup timeout must be positive")
        if self.scrape_interval <= 0:
            raise ConfigurationError("scrape interval must be positive")
        if self.max_in_flight <= 0:
            raise ConfigurationError("max in-flight requests must be positive")


@dataclass(frozen=True)
class SshSettings:
    connect_timeout: int = 30
    command_timeout: float = 600.0
    retries: int = 3

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SshSettings:
        env = os.environ if environ is None else environ
        try:
            return cls(
                connect_timeout=int(env.get("SSH_TIMEOUT", "30")),
                command_timeout=float(env.get("SSH_COMMAND_TIMEOUT", "600")),
                retries=int(env.get("SSH_RETRIES", "3")),
            )
        except ValueError as exc:
            raise ConfigurationError(f"invalid SSH setting: {exc}") from exc


def parse_loads(text: str) -> list[int]:
    """Parse a comma separated list of loads (tx/s), e.g. ``"100,200,500"``."""
    loads = []
    for raw in text.split(","):
        item = raw.strip()
        if not item:
            continue
        try:
            load = int(item)
        except ValueError as exc:
            raise ConfigurationError(f"invalid load {item!r} in {text!r}") from exc
        if load <= 0:
            raise ConfigurationError(f"load must be positive, got {load}")
        loads.append(load)
    return loads


def local_fleet(nodes: int) -> list[Node]:
    return [Node.local(index) for index in range(nodes)]


def discover_remote_fleet(
    nodes: int,
    environ: Mapping[str, str] | None = None,
    prefix: str = "",
) -> list[RemoteNode]:
    """Build the remote fleet from ``{prefix}NODE{i}_*`` environment variables."""
    return [RemoteNode.from_env(index, environ=environ, prefix=prefix) for index in range(nodes)]


__all__ = [
    "OrchestratorSettings",
    "SshSettings",
    "discover_remote_fleet",
    "local_fleet",
    "parse_loads",
]
