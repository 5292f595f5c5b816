"""Protocol-specific command generation and metric naming."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Generic, Sequence, TypeVar

from ..benchmark import BenchmarkParameters, BenchmarkType
from ..client import Node

T = TypeVar("T", bound=BenchmarkType)

METRICS_ROUTE = "/metrics"


class ProtocolCommands(ABC, Generic[T]):
    """Shell commands an orchestrator runs to install, boot and tear down a protocol."""

    @abstractmethod
    def protocol_dependencies(self) -> list[str]:
        """OS-level install commands run once per host, after docker."""

    @abstractmethod
    def db_directories(self) -> list[str]:
        """Glob patterns wiped by a thorough cleanup."""

    @abstractmethod
    def cleanup_commands(self) -> list[str]: ...

    @abstractmethod
    def genesis_command(self, nodes: Sequence[Node]) -> str: ...

    @abstractmethod
    def monitor_command(self, nodes: Sequence[Node]) -> list[tuple[Node, str]]:
        """Per-node command printing the tail of the node's log."""

    @abstractmethod
    def node_command(self, nodes: Sequence[Node], parameters: BenchmarkParameters[T]) -> list[tuple[Node, str]]: ...

    @abstractmethod
    def client_command(self, nodes: Sequence[Node], parameters: BenchmarkParameters[T]) -> list[tuple[Node, str]]:
        """Per-node adapter sidecar; empty when the protocol runs without one."""

    @abstractmethod
    def node_environment(self, node: Node, parameters: BenchmarkParameters[T]) -> dict[str, str]: ...

    @abstractmethod
    def container_name(self, node: Node) -> str: ...

    @abstractmethod
    def sidecar_name(self, node: Node) -> str | None: ...

    @abstractmethod
    def transaction_size(self, parameters: BenchmarkParameters[T]) -> int: ...


class ProtocolMetrics(ABC):
    """Names of the Prometheus series a protocol exposes, and where to scrape them."""

    BENCHMARK_DURATION: str
    TOTAL_TRANSACTIONS: str
    LATENCY_BUCKETS: str
    LATENCY_SUM: str
    LATENCY_SQUARED_SUM: str

    def nodes_metrics_path(self, nodes: Sequence[Node]) -> list[tuple[Node, str]]:
        return [(node, f"http://{node.host}:{node.metrics_port}{METRICS_ROUTE}") for node in nodes]


__all__ = ["METRICS_ROUTE", "ProtocolCommands", "ProtocolMetrics"]
