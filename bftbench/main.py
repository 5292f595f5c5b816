from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from .benchmark import BenchmarkParametersGenerator, FixedLoad, LoadType, SearchLoad
from .config import (
    OrchestratorSettings,
    SshSettings,
    discover_remote_fleet,
    local_fleet,
    parse_loads,
)
from .errors import ConfigurationError, OrchestratorError
from .faults import CrashRecoveryFaults, FaultModel
from .orchestrator.local import LocalNetworkOrchestrator
from .orchestrator.remote import RemoteNetworkOrchestrator
from .protocol.mysticeti import MysticetiBenchmarkType, MysticetiProtocol
from .runner import BenchmarkRunner
from .ssh import SshConnectionManager

LOGGER = logging.getLogger("bftbench")

NETWORK_CHOICES = ("local", "remote", "both")


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="BFT consensus benchmark orchestrator")
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("BENCHMARK_OUTPUT_DIR", "./benchmarks"),
        help="Directory to store benchmark results (JSON, summaries, CSV and charts)",
    )
    parser.add_argument(
        "--network-type",
        choices=NETWORK_CHOICES,
        default=os.environ.get("BENCHMARK_NETWORK_TYPE", "local"),
    )
    parser.add_argument("--committee", type=int, default=int(os.environ.get("BENCHMARK_COMMITTEE", "4")))
    parser.add_argument(
        "--faults",
        default=os.environ.get("BENCHMARK_FAULTS", "0"),
        help="Fault spec: N, permanent:N or crash-recovery:N:SECONDS",
    )
    parser.add_argument(
        "--crash-recovery",
        action="store_true",
        default=_env_flag("BENCHMARK_CRASH_RECOVERY"),
        help="Faulty nodes crash and recover instead of staying down",
    )
    parser.add_argument(
        "--crash-interval",
        type=float,
        default=float(os.environ.get("BENCHMARK_CRASH_INTERVAL", "60")),
        help="Seconds between crash-recovery updates",
    )
    parser.add_argument("--duration", type=float, default=float(os.environ.get("BENCHMARK_DURATION", "180")))
    parser.add_argument("--local-loads", default=os.environ.get("BENCHMARK_LOCAL_LOADS", "100,200,500"))
    parser.add_argument("--remote-loads", default=os.environ.get("BENCHMARK_REMOTE_LOADS", "50,100,200"))
    parser.add_argument(
        "--search",
        action="store_true",
        default=_env_flag("BENCHMARK_SEARCH"),
        help="Search for the breaking point starting from the first load of each list",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=int(os.environ.get("BENCHMARK_MAX_ITERATIONS", "5")),
        help="Search-phase runs after the starting load",
    )
    parser.add_argument(
        "--transaction-size",
        default=os.environ.get("BENCHMARK_TRANSACTION_SIZE", "512"),
        help="Transaction size in bytes",
    )
    parser.add_argument(
        "--docker-compose-path",
        default=os.environ.get("BENCHMARK_DOCKER_COMPOSE_PATH", "../docker-compose.yml"),
    )
    parser.add_argument(
        "--image",
        default=os.environ.get("MYSTICETI_IMAGE", "scalarorg/mysticeti:latest"),
        help="Docker image for validator containers",
    )
    parser.add_argument(
        "--adapter-image",
        default=os.environ.get("MYSTICETI_ADAPTER_IMAGE"),
        help="Optional docker image for the per-node ABCI adapter sidecar",
    )
    parser.add_argument(
        "--working-dir",
        default=os.environ.get("MYSTICETI_WORKING_DIR", "~/mysticeti-data"),
        help="Data directory on every host",
    )
    parser.add_argument(
        "--env-prefix",
        default=os.environ.get("BENCHMARK_NODE_ENV_PREFIX", ""),
        help="Prefix of the NODE{i}_* variables describing remote hosts (e.g. MYSTICETI_)",
    )
    parser.add_argument(
        "--startup-wait",
        type=float,
        default=float(os.environ.get("BENCHMARK_STARTUP_WAIT", "30")),
        help="Seconds to wait for nodes to become healthy",
    )
    parser.add_argument(
        "--scrape-interval",
        type=float,
        default=float(os.environ.get("BENCHMARK_SCRAPE_INTERVAL", "15")),
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        default=_env_flag("BENCHMARK_CLEANUP"),
        help="Remove volumes and data directories when a run stops",
    )
    parser.add_argument("--no-console-output", dest="console_output", action="store_false")
    parser.add_argument("--no-file-output", dest="file_output", action="store_false")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned benchmark runs without executing them",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("BENCHMARK_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_fault_model(args: argparse.Namespace) -> FaultModel:
    faults = FaultModel.parse(args.faults)
    if args.crash_recovery and not isinstance(faults, CrashRecoveryFaults):
        faults = CrashRecoveryFaults(faults=faults.faults, interval=args.crash_interval)
    faults.validate(args.committee)
    return faults


def build_load_type(loads: list[int], search: bool, max_iterations: int) -> LoadType:
    if not loads:
        raise ConfigurationError("at least one load is required")
    if search:
        if max_iterations < 0:
            raise ConfigurationError("max iterations must be >= 0")
        return SearchLoad(starting_load=loads[0], max_iterations=max_iterations)
    return FixedLoad(loads=loads)


def build_generator(
    args: argparse.Namespace,
    loads: str,
    benchmark_type: MysticetiBenchmarkType,
    faults: FaultModel,
) -> BenchmarkParametersGenerator[MysticetiBenchmarkType]:
    load_type = build_load_type(parse_loads(loads), args.search, args.max_iterations)
    return (
        BenchmarkParametersGenerator(benchmark_type, args.committee, load_type)
        .with_faults(faults)
        .with_custom_duration(args.duration)
    )


def _print_plan(network: str, generator: BenchmarkParametersGenerator) -> None:
    load_type = generator.load_type
    print(f"{network} network ({generator.benchmark_type}, {generator.duration:g}s per run)")
    if isinstance(load_type, FixedLoad):
        for load in load_type.loads:
            print(f"  - {generator.nodes} nodes ({generator.faults}) - {load} tx/s")
    else:
        print(
            f"  - breaking-point search from {load_type.starting_load} tx/s, "
            f"up to {load_type.max_iterations} more run(s)"
        )


async def _run(args: argparse.Namespace) -> None:
    benchmark_type = MysticetiBenchmarkType.parse(args.transaction_size)
    faults = build_fault_model(args)
    protocol = MysticetiProtocol(
        working_dir=args.working_dir,
        image=args.image,
        adapter_image=args.adapter_image,
    )
    settings = OrchestratorSettings(
        startup_timeout=args.startup_wait,
        scrape_interval=args.scrape_interval,
        thorough_cleanup=args.cleanup,
    )

    local = remote = None
    if args.network_type in ("local", "both"):
        orchestrator = LocalNetworkOrchestrator(
            Path(args.docker_compose_path),
            local_fleet(args.committee),
            protocol,
            settings=settings,
        )
        local = (orchestrator, build_generator(args, args.local_loads, benchmark_type, faults))
    if args.network_type in ("remote", "both"):
        ssh_settings = SshSettings.from_env()
        orchestrator = RemoteNetworkOrchestrator(
            discover_remote_fleet(args.committee, prefix=args.env_prefix),
            protocol,
            ssh=SshConnectionManager(
                connect_timeout=ssh_settings.connect_timeout,
                command_timeout=ssh_settings.command_timeout,
                retries=ssh_settings.retries,
            ),
            settings=settings,
        )
        remote = (orchestrator, build_generator(args, args.remote_loads, benchmark_type, faults))

    if args.dry_run:
        for network, campaign in (("Local", local), ("Remote", remote)):
            if campaign is not None:
                _print_plan(network, campaign[1])
        return

    runner = BenchmarkRunner(
        Path(args.output_dir),
        save_results=args.file_output,
        print_results=args.console_output,
    )
    await runner.run_comprehensive_benchmarks(local=local, remote=remote)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    LOGGER.info("Benchmark output directory: %s", args.output_dir)

    try:
        asyncio.run(_run(args))
    except OrchestratorError as exc:
        LOGGER.error("Benchmark failed: %s", exc)
        return 1
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
