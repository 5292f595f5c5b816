from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from bftbench.benchmark import (
    BenchmarkParametersGenerator,
    BenchmarkResult,
    FixedLoad,
    NetworkType,
    SearchLoad,
)
from bftbench.charts import LATENCY_THROUGHPUT_CHART, LOAD_EFFICIENCY_CHART
from bftbench.errors import ReadinessTimeoutError, RunTimeoutError
from bftbench.load import LoadStatistics
from bftbench.main import main
from bftbench.orchestrator import RunOutcome
from bftbench.protocol.mysticeti import MysticetiBenchmarkType
from bftbench.runner import SUMMARY_COLUMNS, SUMMARY_CSV, BenchmarkRunner
from conftest import make_collection, make_parameters


class ScriptedOrchestrator:
    """Answers every run with the offered load committed at 100ms, unless told to time out."""

    def __init__(
        self,
        network_type: NetworkType = NetworkType.LOCAL,
        timeout_at: int | None = None,
        not_ready_at: int | None = None,
    ) -> None:
        self.network_type = network_type
        self.timeout_at = timeout_at
        self.not_ready_at = not_ready_at
        self.loads: list[int] = []

    async def run_benchmark(self, parameters) -> RunOutcome:
        self.loads.append(parameters.load)
        if self.timeout_at is not None and parameters.load >= self.timeout_at:
            raise RunTimeoutError(f"run did not finish within {parameters.duration + 1:.0f}s")
        if self.not_ready_at is not None and parameters.load >= self.not_ready_at:
            raise ReadinessTimeoutError("no node became healthy within 30s")
        return RunOutcome(
            measurements=make_collection(load=parameters.load, tps=parameters.load, latency=0.1),
            load_statistics=LoadStatistics(successful=parameters.load, failed=0, started_at=0.0, finished_at=1.0),
        )


def _generator(load_type) -> BenchmarkParametersGenerator[MysticetiBenchmarkType]:
    return BenchmarkParametersGenerator(MysticetiBenchmarkType(), 4, load_type).with_custom_duration(1)


def _result(network: NetworkType, load: int, tps: int, latency: float) -> BenchmarkResult:
    return BenchmarkResult(
        network_type=network,
        parameters=make_parameters(load=load),
        measurements=make_collection(load=load, tps=tps, latency=latency),
        metadata={"status": "ok"},
    )


class TestRunNetworkBenchmarks:
    async def test_fixed_loads_are_run_and_saved(self, tmp_path: Path) -> None:
        orchestrator = ScriptedOrchestrator()
        runner = BenchmarkRunner(tmp_path, print_results=False)

        results = await runner.run_network_benchmarks(orchestrator, _generator(FixedLoad([10, 20])))

        assert orchestrator.loads == [10, 20]
        assert [result.metadata["status"] for result in results] == ["ok", "ok"]
        assert len(list(tmp_path.glob("benchmark_local_*.json"))) == 2
        assert len(list(tmp_path.glob("benchmark_local_*_summary.txt"))) == 2

        saved = BenchmarkResult.load(sorted(tmp_path.glob("*_10txs.json"))[0], MysticetiBenchmarkType)
        assert saved.summary()["throughput"] == 10
        assert saved.load_statistics.successful == 10

    async def test_search_feeds_results_back(self, tmp_path: Path) -> None:
        orchestrator = ScriptedOrchestrator()
        runner = BenchmarkRunner(tmp_path, save_results=False, print_results=False)

        await runner.run_network_benchmarks(orchestrator, _generator(SearchLoad(starting_load=100, max_iterations=2)))

        assert orchestrator.loads == [100, 200, 400]

    async def test_timeout_is_recorded_and_ends_campaign(self, tmp_path: Path) -> None:
        orchestrator = ScriptedOrchestrator(timeout_at=20)
        runner = BenchmarkRunner(tmp_path, print_results=False)

        results = await runner.run_network_benchmarks(orchestrator, _generator(FixedLoad([10, 20, 30])))

        assert orchestrator.loads == [10, 20]
        assert results[-1].metadata["status"] == "timeout"
        assert "did not finish" in results[-1].metadata["error"]
        assert len(results[-1].measurements) == 0
        assert len(list(tmp_path.glob("*.json"))) == 2


class TestComprehensive:
    async def test_both_networks_write_summary_and_charts(self, tmp_path: Path, capsys) -> None:
        runner = BenchmarkRunner(tmp_path)

        campaigns = await runner.run_comprehensive_benchmarks(
            local=(ScriptedOrchestrator(NetworkType.LOCAL), _generator(FixedLoad([10, 20]))),
            remote=(ScriptedOrchestrator(NetworkType.REMOTE), _generator(FixedLoad([10]))),
        )

        assert {network: len(results) for network, results in campaigns.items()} == {
            NetworkType.LOCAL: 2,
            NetworkType.REMOTE: 1,
        }
        summary = pd.read_csv(tmp_path / SUMMARY_CSV)
        assert list(summary.columns) == SUMMARY_COLUMNS
        assert sorted(summary["network_type"]) == ["Local", "Local", "Remote"]
        assert (tmp_path / LATENCY_THROUGHPUT_CHART).exists()
        assert (tmp_path / LOAD_EFFICIENCY_CHART).exists()

        out = capsys.readouterr().out
        assert "COMPREHENSIVE BENCHMARK SUMMARY" in out
        assert "LOCAL vs REMOTE" in out

    async def test_unready_fleet_ends_only_its_own_campaign(self, tmp_path: Path) -> None:
        remote = ScriptedOrchestrator(NetworkType.REMOTE)
        runner = BenchmarkRunner(tmp_path, print_results=False)

        campaigns = await runner.run_comprehensive_benchmarks(
            local=(ScriptedOrchestrator(NetworkType.LOCAL, not_ready_at=20), _generator(FixedLoad([10, 20, 30]))),
            remote=(remote, _generator(FixedLoad([10]))),
        )

        local_results = campaigns[NetworkType.LOCAL]
        assert [result.metadata["status"] for result in local_results] == ["ok", "not-ready"]
        assert "no node became healthy" in local_results[-1].metadata["error"]
        assert remote.loads == [10]
        summary = pd.read_csv(tmp_path / SUMMARY_CSV)
        assert list(summary["status"]) == ["ok", "not-ready", "ok"]

    async def test_no_campaigns(self, tmp_path: Path) -> None:
        runner = BenchmarkRunner(tmp_path, print_results=False)
        assert await runner.run_comprehensive_benchmarks() == {}
        assert not (tmp_path / SUMMARY_CSV).exists()


class TestFrames:
    def test_summary_frame(self) -> None:
        frame = BenchmarkRunner.summary_frame([_result(NetworkType.LOCAL, 100, 90, 0.2)])
        row = frame.iloc[0]
        assert row["throughput_tps"] == 90
        assert row["avg_latency_ms"] == pytest.approx(200)
        assert row["status"] == "ok"
        assert row["successful_transactions"] == 0

    def test_comparison_pairs_matching_runs(self) -> None:
        local = [_result(NetworkType.LOCAL, 100, 100, 0.05), _result(NetworkType.LOCAL, 200, 200, 0.05)]
        remote = [_result(NetworkType.REMOTE, 100, 80, 0.25)]

        comparison = BenchmarkRunner.comparison_frame(local, remote)

        assert len(comparison) == 1
        row = comparison.iloc[0]
        assert row["load"] == 100
        assert row["throughput_delta_tps"] == -20
        assert row["latency_delta_ms"] == pytest.approx(200)

    def test_comparison_with_one_side_missing(self) -> None:
        comparison = BenchmarkRunner.comparison_frame([_result(NetworkType.LOCAL, 100, 100, 0.05)], [])
        assert comparison.empty
        assert "throughput_delta_tps" in comparison.columns


class TestMain:
    def test_dry_run_prints_plan(self, tmp_path: Path, capsys) -> None:
        code = main(["--dry-run", "--output-dir", str(tmp_path), "--local-loads", "10,20", "--duration", "30"])

        assert code == 0
        out = capsys.readouterr().out
        assert "Local network (512B transactions, 30s per run)" in out
        assert "4 nodes (0 crashed) - 20 tx/s" in out
        assert list(tmp_path.iterdir()) == []

    def test_search_dry_run(self, capsys) -> None:
        assert main(["--dry-run", "--search", "--max-iterations", "3", "--local-loads", "50"]) == 0
        assert "breaking-point search from 50 tx/s, up to 3 more run(s)" in capsys.readouterr().out

    @pytest.mark.parametrize(
        "argv",
        [
            ["--faults", "4"],
            ["--transaction-size", "huge"],
            ["--local-loads", "10,x"],
        ],
    )
    def test_invalid_configuration_exits_with_error(self, argv: list[str]) -> None:
        assert main(["--dry-run", *argv]) == 1
