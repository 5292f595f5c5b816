from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .orchestrator import FleetReport


class OrchestratorError(Exception):
    """Base class for every failure raised by the benchmark orchestrator."""


class ConfigurationError(OrchestratorError):
    """Raised before a run starts when the requested setup cannot work."""


class NodeConnectionError(OrchestratorError):
    """Raised when a node cannot be reached over SSH or HTTP."""

    def __init__(self, node: str, message: str) -> None:
        super().__init__(f"{node}: {message}")
        self.node = node


class HostUnreachableError(NodeConnectionError):
    pass


class AuthenticationError(NodeConnectionError):
    pass


class BenchmarkTimeoutError(OrchestratorError, TimeoutError):
    """A bounded phase of the benchmark did not finish in time."""


class CommandTimeoutError(BenchmarkTimeoutError):
    def __init__(self, node: str, command: str, timeout: float) -> None:
        super().__init__(f"{node}: command timed out after {timeout:.0f}s: {command}")
        self.node = node
        self.command = command
        self.timeout = timeout


class ReadinessTimeoutError(BenchmarkTimeoutError):
    pass


class RunTimeoutError(BenchmarkTimeoutError):
    pass


class ProtocolError(OrchestratorError):
    """A deployment command exited with a non-zero status."""

    def __init__(self, node: str, command: str, exit_status: int, stderr: str = "") -> None:
        message = f"{node}: command exited with status {exit_status}: {command}"
        detail = stderr.strip()
        if detail:
            message = f"{message} ({detail.splitlines()[-1]})"
        super().__init__(message)
        self.node = node
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr


class FleetOperationError(OrchestratorError):
    """One or more nodes failed a fleet-wide operation."""

    def __init__(self, report: FleetReport) -> None:
        failed = ", ".join(sorted(report.failures))
        super().__init__(
            f"{report.operation} failed on {len(report.failures)}/{report.total} node(s): {failed}"
        )
        self.report = report

    @property
    def fatal(self) -> bool:
        return self.report.all_failed


class SearchStateError(OrchestratorError):
    """The breaking-point search reached a state it can never legally be in."""


__all__ = [
    "AuthenticationError",
    "BenchmarkTimeoutError",
    "CommandTimeoutError",
    "ConfigurationError",
    "FleetOperationError",
    "HostUnreachableError",
    "NodeConnectionError",
    "OrchestratorError",
    "ProtocolError",
    "ReadinessTimeoutError",
    "RunTimeoutError",
    "SearchStateError",
]
