from __future__ import annotations

import dataclasses
import enum
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generic, Sequence, TypeVar, Union

import pandas as pd

from .errors import SearchStateError
from .faults import FaultModel, PermanentFaults
from .load import LoadStatistics
from .measurement import MeasurementsCollection

LOGGER = logging.getLogger("bftbench.benchmark")


class BenchmarkType(ABC):
    """Protocol-specific dimension of a benchmark (e.g. the transaction size)."""

    @classmethod
    @abstractmethod
    def parse(cls, text: str) -> BenchmarkType: ...

    @abstractmethod
    def to_dict(self) -> dict[str, Any]: ...

    @classmethod
    @abstractmethod
    def from_dict(cls, data: dict[str, Any]) -> BenchmarkType: ...


T = TypeVar("T", bound=BenchmarkType)


@dataclass(frozen=True)
class BenchmarkParameters(Generic[T]):
    """Everything needed to deploy and load one benchmark run."""

    benchmark_type: T
    nodes: int = 4
    faults: FaultModel = field(default_factory=PermanentFaults)
    load: int = 500
    duration: float = 60.0

    def validate(self) -> None:
        self.faults.validate(self.nodes)

    @property
    def total_transactions(self) -> int:
        return int(self.load * self.duration)

    @property
    def per_node_load(self) -> int:
        return self.load // self.nodes

    def with_load(self, load: int) -> BenchmarkParameters[T]:
        return dataclasses.replace(self, load=load)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": self.nodes,
            "load": self.load,
            "duration": self.duration,
            **self.benchmark_type.to_dict(),
            "faults": self.faults.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], benchmark_type_cls: type[T]) -> BenchmarkParameters[T]:
        data = dict(data)
        nodes = int(data.pop("nodes"))
        load = int(data.pop("load"))
        duration = float(data.pop("duration"))
        faults = FaultModel.from_dict(data.pop("faults", {}))
        return cls(
            benchmark_type=benchmark_type_cls.from_dict(data),
            nodes=nodes,
            faults=faults,
            load=load,
            duration=duration,
        )

    def __str__(self) -> str:
        return f"{self.nodes} nodes ({self.faults}) - {self.load} tx/s"


@dataclass(frozen=True)
class FixedLoad:
    """Run once per load, in order."""

    loads: Sequence[int]


@dataclass(frozen=True)
class SearchLoad:
    """Search for the breaking point starting from ``starting_load``."""

    starting_load: int
    max_iterations: int


LoadType = Union[FixedLoad, SearchLoad]


@dataclass(frozen=True)
class Ramping:
    """Doubling the load; ``lower`` is the last run that kept up (None before any run)."""

    lower: MeasurementsCollection | None = None


@dataclass(frozen=True)
class Bisecting:
    lower: MeasurementsCollection
    upper: MeasurementsCollection


@dataclass(frozen=True)
class Exhausted:
    pass


SearchState = Union[Ramping, Bisecting, Exhausted]


def out_of_capacity(last: MeasurementsCollection, new: MeasurementsCollection) -> bool:
    """Whether ``new`` pushed the system past what it sustained in ``last``.

    Either the latency grew more than 5x, or the nodes committed less than two
    thirds of the offered load.
    """
    label = next(new.labels(), None)
    if label is None:
        return False

    last_latency = last.aggregate_average_latency(label) if last.has_label(label) else 0.0
    high_latency = new.aggregate_average_latency(label) > last_latency * 5

    offered = new.transaction_load()
    low_throughput = new.aggregate_tps(label) < (2 * offered) // 3

    return high_latency or low_throughput


class BenchmarkParametersGenerator(Generic[T]):
    """Produce one set of benchmark parameters per run.

    ``next_parameters`` peeks at the upcoming run; ``register_result`` feeds the
    measurements back so the search can pick the next load.
    """

    DEFAULT_DURATION = 180.0

    def __init__(self, benchmark_type: T, nodes: int, load_type: LoadType) -> None:
        self.benchmark_type = benchmark_type
        self.nodes = nodes
        self.faults: FaultModel = PermanentFaults()
        self.duration = self.DEFAULT_DURATION
        self.load_type = load_type
        self.iterations = 0

        self._pending: list[int] = []
        self._state: SearchState | None = None
        if isinstance(load_type, FixedLoad):
            self._pending = list(load_type.loads)
            self._next_load = self._pending.pop(0) if self._pending else None
        else:
            self._state = Ramping()
            self._next_load = load_type.starting_load

    def with_benchmark_type(self, benchmark_type: T) -> BenchmarkParametersGenerator[T]:
        self.benchmark_type = benchmark_type
        return self

    def with_faults(self, faults: FaultModel) -> BenchmarkParametersGenerator[T]:
        self.faults = faults
        return self

    def with_custom_duration(self, duration: float) -> BenchmarkParametersGenerator[T]:
        self.duration = duration
        return self

    @property
    def state(self) -> SearchState | None:
        return self._state

    @property
    def lower_bound(self) -> MeasurementsCollection | None:
        if isinstance(self._state, (Ramping, Bisecting)):
            return self._state.lower
        return None

    @property
    def upper_bound(self) -> MeasurementsCollection | None:
        if isinstance(self._state, Bisecting):
            return self._state.upper
        return None

    def next_parameters(self) -> BenchmarkParameters[T] | None:
        if self._next_load is None:
            return None
        return BenchmarkParameters(
            benchmark_type=self.benchmark_type,
            nodes=self.nodes,
            faults=self.faults,
            load=self._next_load,
            duration=self.duration,
        )

    def register_result(self, result: MeasurementsCollection) -> None:
        if isinstance(self.load_type, FixedLoad):
            self._next_load = self._pending.pop(0) if self._pending else None
            return

        if self.iterations >= self.load_type.max_iterations:
            if isinstance(self._state, Exhausted):
                raise SearchStateError("result registered after the search was exhausted")
            self._state = Exhausted()
            self._next_load = None
            return

        self.iterations += 1
        self._state, self._next_load = self._advance(self._state, result)
        LOGGER.debug("Search state %s, next load %s tx/s", type(self._state).__name__, self._next_load)

    def _advance(self, state: SearchState | None, result: MeasurementsCollection) -> tuple[SearchState, int]:
        load = result.transaction_load()

        if isinstance(state, Ramping) and state.lower is None:
            return Ramping(lower=result), load * 2

        if isinstance(state, Ramping):
            lower = state.lower
            if out_of_capacity(lower, result):
                return Bisecting(lower=lower, upper=result), (lower.transaction_load() + load) // 2
            return Ramping(lower=result), load * 2

        if isinstance(state, Bisecting):
            if out_of_capacity(state.lower, result):
                lower, upper = state.lower, result
            else:
                lower, upper = result, state.upper
            if lower.transaction_load() > upper.transaction_load():
                raise SearchStateError(
                    f"lower bound {lower.transaction_load()} tx/s exceeds "
                    f"upper bound {upper.transaction_load()} tx/s"
                )
            return Bisecting(lower=lower, upper=upper), (
                lower.transaction_load() + upper.transaction_load()
            ) // 2

        raise SearchStateError(f"breaking-point search is in an incoherent state: {state!r}")


class NetworkType(str, enum.Enum):
    LOCAL = "Local"
    REMOTE = "Remote"

    @property
    def slug(self) -> str:
        return self.value.lower()


@dataclass
class BenchmarkResult(Generic[T]):
    """Outcome of one run: what was asked for and what the fleet delivered."""

    network_type: NetworkType
    parameters: BenchmarkParameters[T]
    measurements: MeasurementsCollection[T]
    load_statistics: LoadStatistics | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str | None:
        return next(self.measurements.labels(), None)

    def summary(self) -> dict[str, Any]:
        label = self.label
        stats = self.load_statistics
        summary: dict[str, Any] = {
            "label": label,
            "throughput": 0,
            "avg_latency_ms": 0.0,
            "latency_std_dev_ms": 0.0,
            "duration_secs": self.measurements.benchmark_duration(),
            "successful_transactions": stats.successful if stats else 0,
            "failed_transactions": stats.failed if stats else 0,
        }
        if label is not None:
            summary["throughput"] = self.measurements.aggregate_tps(label)
            summary["avg_latency_ms"] = self.measurements.aggregate_average_latency(label) * 1000
            summary["latency_std_dev_ms"] = self.measurements.aggregate_stdev_latency(label) * 1000
        return summary

    def to_dict(self) -> dict[str, Any]:
        return {
            "network_type": self.network_type.value,
            "parameters": self.parameters.to_dict(),
            "results": self.summary(),
            "load_statistics": self.load_statistics.to_dict() if self.load_statistics else None,
            "measurements": self.measurements.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], benchmark_type_cls: type[T]) -> BenchmarkResult[T]:
        parameters = BenchmarkParameters.from_dict(data["parameters"], benchmark_type_cls)
        statistics = data.get("load_statistics")
        return cls(
            network_type=NetworkType(data["network_type"]),
            parameters=parameters,
            measurements=MeasurementsCollection.from_dict(data.get("measurements", []), parameters),
            load_statistics=LoadStatistics.from_dict(statistics) if statistics else None,
            timestamp=datetime.fromisoformat(data["timestamp"]),
            metadata=dict(data.get("metadata") or {}),
        )

    @classmethod
    def load(cls, path: Path, benchmark_type_cls: type[T]) -> BenchmarkResult[T]:
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f), benchmark_type_cls)

    def file_stem(self) -> str:
        return (
            f"benchmark_{self.network_type.slug}_{self.timestamp:%Y%m%d_%H%M%S}_"
            f"{self.parameters.nodes}nodes_{self.parameters.load}txs"
        )

    def save(self, output_dir: Path) -> tuple[Path, Path]:
        output_dir.mkdir(parents=True, exist_ok=True)
        json_path = output_dir / f"{self.file_stem()}.json"
        with open(json_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

        summary_path = output_dir / f"{self.file_stem()}_summary.txt"
        summary_path.write_text(self.summary_text(), encoding="utf-8")
        LOGGER.info("Benchmark results saved to %s", json_path)
        return json_path, summary_path

    def summary_text(self) -> str:
        summary = self.summary()
        lines = [
            "BENCHMARK SUMMARY",
            "=" * 50,
            f"Network Type: {self.network_type.value}",
            f"Timestamp: {self.timestamp.isoformat()}",
            f"Parameters: {self.parameters}",
            f"Benchmark Type: {self.parameters.benchmark_type}",
            f"Duration: {self.parameters.duration:g}s",
            "",
        ]
        if summary["label"] is not None:
            lines.extend(
                [
                    "SUMMARY METRICS:",
                    f"Throughput: {summary['throughput']} tx/s",
                    f"Average Latency: {summary['avg_latency_ms']:.2f} ms",
                    f"Latency Std Dev: {summary['latency_std_dev_ms']:.2f} ms",
                    f"Input Load: {self.parameters.load} tx/s",
                ]
            )
        if self.load_statistics is not None:
            lines.extend(
                [
                    f"Successful Transactions: {self.load_statistics.successful}",
                    f"Failed Transactions: {self.load_statistics.failed}",
                    f"Submission Rate: {self.load_statistics.realized_rate:.2f} tx/s",
                ]
            )
        for key, value in sorted(self.metadata.items()):
            lines.append(f"{key}: {value}")
        lines.append("=" * 50)
        return "\n".join(lines) + "\n"

    def metrics_frame(self) -> pd.DataFrame:
        rows = [
            {
                "label": label,
                "throughput_tps": self.measurements.aggregate_tps(label),
                "avg_latency_ms": self.measurements.aggregate_average_latency(label) * 1000,
                "latency_std_dev_ms": self.measurements.aggregate_stdev_latency(label) * 1000,
            }
            for label in self.measurements.labels()
        ]
        return pd.DataFrame(rows, columns=["label", "throughput_tps", "avg_latency_ms", "latency_std_dev_ms"])

    def print_to_console(self) -> None:
        print()
        print("=" * 80)
        print("BENCHMARK RESULTS")
        print("=" * 80)
        print(f"Network Type: {self.network_type.value}")
        print(f"Timestamp: {self.timestamp.isoformat()}")
        print(f"Parameters: {self.parameters}")
        print(f"Duration: {self.parameters.duration:g}s")
        frame = self.metrics_frame()
        if frame.empty:
            print("No measurements were collected.")
        else:
            print(frame.to_string(index=False, float_format=lambda v: f"{v:.2f}"))
        if self.load_statistics is not None:
            stats = self.load_statistics
            print(
                f"Submitted: {stats.successful} ok / {stats.failed} failed "
                f"({stats.realized_rate:.2f} tx/s realised)"
            )
        print("=" * 80)


__all__ = [
    "BenchmarkParameters",
    "BenchmarkParametersGenerator",
    "BenchmarkResult",
    "BenchmarkType",
    "Bisecting",
    "Exhausted",
    "FixedLoad",
    "LoadType",
    "NetworkType",
    "Ramping",
    "SearchLoad",
    "out_of_capacity",
]
