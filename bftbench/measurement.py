from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, Iterator, TypeVar

from prometheus_client.parser import text_string_to_metric_families

if TYPE_CHECKING:
    from .benchmark import BenchmarkParameters
    from .protocol import ProtocolMetrics

DEFAULT_LABEL = "default"
WORKLOAD_LABEL = "workload"

T = TypeVar("T")


def _recency(measurement: Measurement) -> tuple[float, int, float, float]:
    return (measurement.elapsed, measurement.count, measurement.sum, measurement.squared_sum)


@dataclass(frozen=True)
class Measurement:
    """One scrape of a node's latency counters for a single label.

    All counters are cumulative since the node started the benchmark; ``elapsed``
    is the node-reported benchmark duration at scrape time.
    """

    count: int = 0
    sum: float = 0.0
    squared_sum: float = 0.0
    buckets: dict[str, int] = field(default_factory=dict, hash=False)
    elapsed: float = 0.0

    def tps(self) -> int:
        if self.elapsed <= 0:
            return 0
        return int(self.count // self.elapsed)

    def average_latency(self) -> float:
        return self.sum / self.count if self.count else 0.0

    def stdev_latency(self) -> float:
        if not self.count:
            return 0.0
        variance = self.squared_sum / self.count - self.average_latency() ** 2
        return math.sqrt(max(variance, 0.0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "sum": self.sum,
            "squared_sum": self.squared_sum,
            "buckets": dict(self.buckets),
            "elapsed": self.elapsed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Measurement:
        return cls(
            count=int(data.get("count", 0)),
            sum=float(data.get("sum", 0.0)),
            squared_sum=float(data.get("squared_sum", 0.0)),
            buckets={str(k): int(v) for k, v in (data.get("buckets") or {}).items()},
            elapsed=float(data.get("elapsed", 0.0)),
        )

    @classmethod
    def from_prometheus(cls, text: str, metrics: ProtocolMetrics) -> dict[str, Measurement]:
        """Extract one measurement per workload label from a Prometheus exposition."""
        elapsed = 0.0
        counts: dict[str, int] = {}
        sums: dict[str, float] = {}
        squared: dict[str, float] = {}
        buckets: dict[str, dict[str, int]] = {}

        bucket_name = f"{metrics.LATENCY_BUCKETS}_bucket"
        squared_names = {metrics.LATENCY_SQUARED_SUM, f"{metrics.LATENCY_SQUARED_SUM}_total"}

        for family in text_string_to_metric_families(text):
            for sample in family.samples:
                label = sample.labels.get(WORKLOAD_LABEL, DEFAULT_LABEL)
                if sample.name == metrics.BENCHMARK_DURATION:
                    elapsed = max(elapsed, float(sample.value))
                elif sample.name == metrics.TOTAL_TRANSACTIONS:
                    counts[label] = int(sample.value)
                elif sample.name == metrics.LATENCY_SUM:
                    sums[label] = float(sample.value)
                elif sample.name in squared_names:
                    squared[label] = float(sample.value)
                elif sample.name == bucket_name:
                    bound = sample.labels.get("le", "+Inf")
                    buckets.setdefault(label, {})[bound] = int(sample.value)

        labels = list(dict.fromkeys([*counts, *sums, *squared, *buckets]))
        return {
            label: cls(
                count=counts.get(label, 0),
                sum=sums.get(label, 0.0),
                squared_sum=squared.get(label, 0.0),
                buckets=buckets.get(label, {}),
                elapsed=elapsed,
            )
            for label in labels
        }


class MeasurementsCollection(Generic[T]):
    """Scrape samples gathered from every node during one benchmark run."""

    def __init__(self, parameters: BenchmarkParameters[T]) -> None:
        self.parameters = parameters
        self._samples: list[tuple[int, str, Measurement]] = []
        self._lock = threading.Lock()
        self._finalized = False

    def add(self, scrape_index: int, label: str, measurement: Measurement) -> None:
        with self._lock:
            if self._finalized:
                raise RuntimeError("cannot add measurements to a finalized collection")
            self._samples.append((scrape_index, label, measurement))

    def finalize(self) -> MeasurementsCollection[T]:
        with self._lock:
            self._finalized = True
        return self

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def samples(self) -> tuple[tuple[int, str, Measurement], ...]:
        return tuple(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    def labels(self) -> Iterator[str]:
        seen: set[str] = set()
        for _, label, _ in self._samples:
            if label not in seen:
                seen.add(label)
                yield label

    def has_label(self, label: str) -> bool:
        return any(sample_label == label for _, sample_label, _ in self._samples)

    def transaction_load(self) -> int:
        """The offered load of the run, not what the nodes actually committed."""
        return self.parameters.load

    def benchmark_duration(self) -> float:
        return max((m.elapsed for _, _, m in self._samples), default=0.0)

    def _latest(self, label: str) -> list[Measurement]:
        latest: dict[int, Measurement] = {}
        for scrape_index, sample_label, measurement in self._samples:
            if sample_label != label:
                continue
            current = latest.get(scrape_index)
            if current is None or _recency(measurement) > _recency(current):
                latest[scrape_index] = measurement
        if not latest:
            raise KeyError(f"no measurements recorded for label {label!r}")
        return list(latest.values())

    def aggregate_tps(self, label: str) -> int:
        latest = self._latest(label)
        elapsed = max(m.elapsed for m in latest)
        if elapsed <= 0:
            return 0
        return int(sum(m.count for m in latest) // elapsed)

    def aggregate_average_latency(self, label: str) -> float:
        latest = self._latest(label)
        count = sum(m.count for m in latest)
        if count == 0:
            return 0.0
        return sum(m.sum for m in latest) / count

    def aggregate_stdev_latency(self, label: str) -> float:
        latest = self._latest(label)
        count = sum(m.count for m in latest)
        if count == 0:
            return 0.0
        mean = sum(m.sum for m in latest) / count
        variance = sum(m.squared_sum for m in latest) / count - mean**2
        return math.sqrt(max(variance, 0.0))

    def to_dict(self) -> list[dict[str, Any]]:
        return [
            {"scraper": scrape_index, "label": label, **measurement.to_dict()}
            for scrape_index, label, measurement in self._samples
        ]

    @classmethod
    def from_dict(
        cls,
        samples: list[dict[str, Any]],
        parameters: BenchmarkParameters[T],
    ) -> MeasurementsCollection[T]:
        collection = cls(parameters)
        for sample in samples:
            collection.add(int(sample["scraper"]), str(sample["label"]), Measurement.from_dict(sample))
        return collection.finalize()


__all__ = ["DEFAULT_LABEL", "Measurement", "MeasurementsCollection"]
