from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import Any, Sequence

from ..benchmark import BenchmarkParameters, BenchmarkType
from ..client import RPC_PORT, Node
from ..errors import ConfigurationError
from . import ProtocolCommands, ProtocolMetrics

DEFAULT_IMAGE = "scalarorg/mysticeti:latest"
DEFAULT_WORKING_DIR = "~/mysticeti-data"
CONTAINER_DATA_DIR = "/app/data"


@dataclass(frozen=True, order=True)
class MysticetiBenchmarkType(BenchmarkType):
    """Mysticeti benchmarks vary only in transaction size (bytes)."""

    transaction_size: int = 512

    @classmethod
    def parse(cls, text: str) -> MysticetiBenchmarkType:
        try:
            size = int(text.strip())
        except ValueError as exc:
            raise ConfigurationError(f"invalid transaction size: {text!r}") from exc
        if size <= 0:
            raise ConfigurationError(f"transaction size must be positive, got {size}")
        return cls(transaction_size=size)

    def to_dict(self) -> dict[str, Any]:
        return {"transaction_size": self.transaction_size}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MysticetiBenchmarkType:
        return cls(transaction_size=int(data.get("transaction_size", 512)))

    def __str__(self) -> str:
        return f"{self.transaction_size}B transactions"


class MysticetiProtocol(ProtocolCommands[MysticetiBenchmarkType], ProtocolMetrics):
    """Run Mysticeti validators as docker containers, one per host."""

    BENCHMARK_DURATION = "benchmark_duration"
    TOTAL_TRANSACTIONS = "latency_s_count"
    LATENCY_BUCKETS = "latency_s"
    LATENCY_SUM = "latency_s_sum"
    LATENCY_SQUARED_SUM = "latency_squared_s"

    def __init__(
        self,
        working_dir: str = DEFAULT_WORKING_DIR,
        image: str = DEFAULT_IMAGE,
        adapter_image: str | None = None,
        log_level: str = "info",
    ) -> None:
        self.working_dir = working_dir.rstrip("/")
        self.image = image
        self.adapter_image = adapter_image
        self.log_level = log_level

    def protocol_dependencies(self) -> list[str]:
        return []

    def db_directories(self) -> list[str]:
        return [f"{self.working_dir}/private/val-*/*"]

    def cleanup_commands(self) -> list[str]:
        return [
            "docker ps -aq --filter name=mysticeti- | xargs -r docker rm -f",
            "killall mysticeti || true",
        ]

    def genesis_command(self, nodes: Sequence[Node]) -> str:
        ips = " ".join(node.host for node in nodes)
        return " && ".join(
            [
                f"mkdir -p {self.working_dir}",
                f"docker run --rm -v {self.working_dir}:{CONTAINER_DATA_DIR} {self.image} "
                f"benchmark-genesis --ips {ips} --working-directory {CONTAINER_DATA_DIR}",
            ]
        )

    def monitor_command(self, nodes: Sequence[Node]) -> list[tuple[Node, str]]:
        return [(node, f"docker logs --tail 100 {self.container_name(node)} 2>&1") for node in nodes]

    def node_command(
        self,
        nodes: Sequence[Node],
        parameters: BenchmarkParameters[MysticetiBenchmarkType],
    ) -> list[tuple[Node, str]]:
        commands = []
        for node in nodes:
            name = self.container_name(node)
            env = " ".join(
                f"-e {key}={shlex.quote(value)}"
                for key, value in {"RUST_LOG": self.log_level, **self.node_environment(node, parameters)}.items()
            )
            run = (
                f"docker run -d --name {name} "
                f"-p {node.rpc_port}:{RPC_PORT} -p {node.abci_port}:{node.abci_port} "
                f"-p {node.metrics_port}:{node.metrics_port} "
                f"-v {self.working_dir}:{CONTAINER_DATA_DIR} {env} {self.image} "
                f"--authority-index {node.authority_index} --rpc-port {RPC_PORT} "
                f"--abci-port {node.abci_port} --working-directory {CONTAINER_DATA_DIR}"
            )
            commands.append(
                (
                    node,
                    " && ".join(
                        [
                            f"mkdir -p {self.working_dir}",
                            f"docker pull {self.image}",
                            f"(docker rm -f {name} > /dev/null 2>&1 || true)",
                            run,
                        ]
                    ),
                )
            )
        return commands

    def client_command(
        self,
        nodes: Sequence[Node],
        parameters: BenchmarkParameters[MysticetiBenchmarkType],
    ) -> list[tuple[Node, str]]:
        if self.adapter_image is None:
            return []
        commands = []
        for node in nodes:
            name = self.sidecar_name(node)
            commands.append(
                (
                    node,
                    f"(docker rm -f {name} > /dev/null 2>&1 || true) && "
                    f"docker run -d --name {name} --network container:{self.container_name(node)} "
                    f"{self.adapter_image} --port {node.abci_port}",
                )
            )
        return commands

    def node_environment(
        self,
        node: Node,
        parameters: BenchmarkParameters[MysticetiBenchmarkType],
    ) -> dict[str, str]:
        return {
            "TPS": str(parameters.per_node_load),
            "TRANSACTION_SIZE": str(parameters.benchmark_type.transaction_size),
            "AUTHORITY_INDEX": str(node.authority_index),
        }

    def container_name(self, node: Node) -> str:
        return f"mysticeti-node{node.authority_index}"

    def sidecar_name(self, node: Node) -> str | None:
        if self.adapter_image is None:
            return None
        return f"mysticeti-abci{node.authority_index}"

    def transaction_size(self, parameters: BenchmarkParameters[MysticetiBenchmarkType]) -> int:
        return parameters.benchmark_type.transaction_size


__all__ = ["MysticetiBenchmarkType", "MysticetiProtocol"]
