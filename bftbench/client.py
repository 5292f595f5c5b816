from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from .errors import ConfigurationError

RPC_PORT = 26657
ABCI_BASE_PORT = 26670
METRICS_BASE_PORT = 8000

DEFAULT_SSH_PORT = 22
DEFAULT_SSH_USER = "ubuntu"
DEFAULT_SSH_KEY = "~/.ssh/id_rsa"


@dataclass(frozen=True)
class Instance:
    """A provisioned machine (or local container slot) able to host one node."""

    id: str
    main_ip: str
    region: str = "local"
    tags: tuple[str, ...] = ()
    specs: str = ""
    status: str = "running"

    def is_active(self) -> bool:
        return self.status == "running"


@dataclass(frozen=True)
class Node:
    """One committee member: an instance plus the ports its roles listen on."""

    instance: Instance
    authority_index: int
    rpc_port: int
    abci_port: int
    metrics_port: int

    @property
    def name(self) -> str:
        return f"node{self.authority_index}"

    @property
    def host(self) -> str:
        return self.instance.main_ip

    def rpc_url(self, route: str = "") -> str:
        return f"http://{self.host}:{self.rpc_port}{route}"

    @classmethod
    def local(cls, index: int) -> Node:
        return cls(
            instance=Instance(id=f"local-{index}", main_ip="127.0.0.1"),
            authority_index=index,
            rpc_port=RPC_PORT + index,
            abci_port=ABCI_BASE_PORT + index,
            metrics_port=METRICS_BASE_PORT + index,
        )


@dataclass(frozen=True)
class RemoteNode(Node):
    """A node reached over SSH; ports are derived from the authority index."""

    ssh_port: int = DEFAULT_SSH_PORT
    ssh_user: str = DEFAULT_SSH_USER
    ssh_key_path: str = DEFAULT_SSH_KEY

    @classmethod
    def from_env(
        cls,
        index: int,
        environ: Mapping[str, str] | None = None,
        prefix: str = "",
    ) -> RemoteNode:
        env = os.environ if environ is None else environ
        key = f"{prefix}NODE{index}"

        host = env.get(f"{key}_HOST")
        if not host:
            raise ConfigurationError(f"{key}_HOST environment variable not set")

        raw_port = env.get(f"{key}_SSH_PORT", str(DEFAULT_SSH_PORT))
        try:
            ssh_port = int(raw_port)
        except ValueError as exc:
            raise ConfigurationError(f"invalid SSH port for node {index}: {raw_port!r}") from exc
        if not 0 < ssh_port < 65536:
            raise ConfigurationError(f"invalid SSH port for node {index}: {ssh_port}")

        return cls(
            instance=Instance(id=key.lower(), main_ip=host, region="remote"),
            authority_index=index,
            rpc_port=RPC_PORT,
            abci_port=ABCI_BASE_PORT + index,
            metrics_port=METRICS_BASE_PORT + index,
            ssh_port=ssh_port,
            ssh_user=env.get(f"{key}_SSH_USER", DEFAULT_SSH_USER),
            ssh_key_path=os.path.expanduser(env.get(f"{key}_SSH_KEY", DEFAULT_SSH_KEY)),
        )


__all__ = ["Instance", "Node", "RemoteNode"]
