from __future__ import annotations

import logging
from pathlib import Path
from typing import Generic, Iterable, Sequence, TypeVar

import pandas as pd

from .benchmark import (
    BenchmarkParametersGenerator,
    BenchmarkResult,
    BenchmarkType,
    NetworkType,
)
from .charts import render_summary_charts
from .errors import BenchmarkTimeoutError, ReadinessTimeoutError
from .measurement import MeasurementsCollection
from .orchestrator import Orchestrator

LOGGER = logging.getLogger("bftbench.runner")

T = TypeVar("T", bound=BenchmarkType)

SUMMARY_CSV = "benchmark_summary.csv"
SUMMARY_COLUMNS = [
    "network_type",
    "timestamp",
    "nodes",
    "faults",
    "benchmark_type",
    "load",
    "duration_s",
    "throughput_tps",
    "avg_latency_ms",
    "latency_std_dev_ms",
    "successful_transactions",
    "failed_transactions",
    "status",
]

Campaign = tuple[Orchestrator, BenchmarkParametersGenerator]


class BenchmarkRunner(Generic[T]):
    """Drive parameter generators against orchestrators and persist every run."""

    def __init__(self, output_dir: Path, save_results: bool = True, print_results: bool = True) -> None:
        self.output_dir = Path(output_dir)
        self.save_results = save_results
        self.print_results = print_results

    async def run_network_benchmarks(
        self,
        orchestrator: Orchestrator,
        generator: BenchmarkParametersGenerator[T],
    ) -> list[BenchmarkResult[T]]:
        network = orchestrator.network_type
        results: list[BenchmarkResult[T]] = []

        while True:
            parameters = generator.next_parameters()
            if parameters is None:
                break

            LOGGER.info("Running %s benchmark %d: %s", network.value.lower(), len(results) + 1, parameters)
            try:
                outcome = await orchestrator.run_benchmark(parameters)
            except BenchmarkTimeoutError as exc:
                status = "not-ready" if isinstance(exc, ReadinessTimeoutError) else "timeout"
                LOGGER.error("%s benchmark ended with status %s: %s", network.value, status, exc)
                result = BenchmarkResult(
                    network_type=network,
                    parameters=parameters,
                    measurements=MeasurementsCollection(parameters).finalize(),
                    metadata={"status": status, "error": str(exc)},
                )
                self._record(result)
                results.append(result)
                break

            metadata: dict[str, object] = {"status": "ok"}
            if outcome.warnings:
                metadata["warnings"] = list(outcome.warnings)
            result = BenchmarkResult(
                network_type=network,
                parameters=parameters,
                measurements=outcome.measurements,
                load_statistics=outcome.load_statistics,
                metadata=metadata,
            )
            self._record(result)
            results.append(result)
            generator.register_result(outcome.measurements)

        LOGGER.info("%s campaign finished after %d run(s)", network.value, len(results))
        return results

    async def run_comprehensive_benchmarks(
        self,
        local: Campaign | None = None,
        remote: Campaign | None = None,
    ) -> dict[NetworkType, list[BenchmarkResult[T]]]:
        campaigns: dict[NetworkType, list[BenchmarkResult[T]]] = {}
        for campaign in (local, remote):
            if campaign is None:
                continue
            orchestrator, generator = campaign
            campaigns[orchestrator.network_type] = await self.run_network_benchmarks(orchestrator, generator)

        everything = [result for results in campaigns.values() for result in results]
        if self.print_results:
            self.print_comprehensive_summary(campaigns)
        if self.save_results and everything:
            self.write_summary(everything)
        return campaigns

    def _record(self, result: BenchmarkResult[T]) -> None:
        if self.print_results:
            result.print_to_console()
        if self.save_results:
            result.save(self.output_dir)

    @staticmethod
    def summary_frame(results: Iterable[BenchmarkResult[T]]) -> pd.DataFrame:
        rows = []
        for result in results:
            summary = result.summary()
            stats = result.load_statistics
            rows.append(
                {
                    "network_type": result.network_type.value,
                    "timestamp": result.timestamp.isoformat(),
                    "nodes": result.parameters.nodes,
                    "faults": str(result.parameters.faults),
                    "benchmark_type": str(result.parameters.benchmark_type),
                    "load": result.parameters.load,
                    "duration_s": result.parameters.duration,
                    "throughput_tps": summary["throughput"],
                    "avg_latency_ms": summary["avg_latency_ms"],
                    "latency_std_dev_ms": summary["latency_std_dev_ms"],
                    "successful_transactions": stats.successful if stats else 0,
                    "failed_transactions": stats.failed if stats else 0,
                    "status": result.metadata.get("status", "ok"),
                }
            )
        return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)

    def write_summary(self, results: Sequence[BenchmarkResult[T]]) -> Path:
        frame = self.summary_frame(results)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        csv_path = self.output_dir / SUMMARY_CSV
        frame.to_csv(csv_path, index=False)
        LOGGER.info("Saved summary of %d run(s) to %s", len(frame), csv_path)
        render_summary_charts(frame, self.output_dir)
        return csv_path

    def print_comprehensive_summary(self, campaigns: dict[NetworkType, list[BenchmarkResult[T]]]) -> None:
        print()
        print("=" * 80)
        print("COMPREHENSIVE BENCHMARK SUMMARY")
        print("=" * 80)
        for network, results in campaigns.items():
            print(f"\n{network.value} network: {len(results)} run(s)")
            frame = self.summary_frame(results)
            if frame.empty:
                print("  No runs were executed.")
                continue
            columns = ["nodes", "load", "throughput_tps", "avg_latency_ms", "latency_std_dev_ms", "status"]
            print(frame[columns].to_string(index=False, float_format=lambda v: f"{v:.2f}"))

        comparison = self.comparison_frame(
            campaigns.get(NetworkType.LOCAL, []),
            campaigns.get(NetworkType.REMOTE, []),
        )
        if not comparison.empty:
            print("\nLOCAL vs REMOTE")
            print(comparison.to_string(index=False, float_format=lambda v: f"{v:.2f}"))
        print("=" * 80)

    @classmethod
    def comparison_frame(
        cls,
        local: Sequence[BenchmarkResult[T]],
        remote: Sequence[BenchmarkResult[T]],
    ) -> pd.DataFrame:
        """Pair local and remote runs with the same committee size and load."""
        keys = ["nodes", "load"]
        metrics = ["throughput_tps", "avg_latency_ms"]
        local_frame = cls.summary_frame(local)
        remote_frame = cls.summary_frame(remote)
        local_frame = local_frame[local_frame["status"] == "ok"][keys + metrics]
        remote_frame = remote_frame[remote_frame["status"] == "ok"][keys + metrics]
        if local_frame.empty or remote_frame.empty:
            return pd.DataFrame(
                columns=keys
                + [f"{m}_{side}" for side in ("local", "remote") for m in metrics]
                + ["throughput_delta_tps", "latency_delta_ms"]
            )
        merged = local_frame.merge(remote_frame, on=keys, suffixes=("_local", "_remote"))
        merged["throughput_delta_tps"] = merged["throughput_tps_remote"] - merged["throughput_tps_local"]
        merged["latency_delta_ms"] = merged["avg_latency_ms_remote"] - merged["avg_latency_ms_local"]
        return merged


__all__ = ["BenchmarkRunner", "SUMMARY_CSV"]
