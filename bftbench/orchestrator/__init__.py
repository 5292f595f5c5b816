"""Deploy a committee, load it, and scrape its metrics.

The base :class:`Orchestrator` owns the run contract shared by every testbed:
fan-out over nodes, readiness polling, load submission, periodic scraping and
crash-recovery fault injection. Subclasses only know how to boot, stop and
inspect a single node on their transport.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

import aiohttp

from ..benchmark import BenchmarkParameters, BenchmarkType, NetworkType
from ..client import Node
from ..config import OrchestratorSettings
from ..errors import (
    BenchmarkTimeoutError,
    ConfigurationError,
    FleetOperationError,
    ReadinessTimeoutError,
    RunTimeoutError,
)
from ..faults import CrashRecoveryFaults, CrashRecoverySchedule, PermanentFaults
from ..load import SUBMIT_ROUTE, LoadStatistics, TransactionLoadGenerator
from ..measurement import Measurement, MeasurementsCollection

LOGGER = logging.getLogger("bftbench.orchestrator")

HEALTH_ROUTE = "/health"

T = TypeVar("T", bound=BenchmarkType)
N = TypeVar("N", bound=Node)


@dataclass(frozen=True)
class FleetReport:
    """Per-node outcome of one fleet-wide operation."""

    operation: str
    succeeded: tuple[str, ...] = ()
    failures: dict[str, BaseException] = field(default_factory=dict, hash=False)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failures)

    @property
    def all_failed(self) -> bool:
        return bool(self.failures) and not self.succeeded

    def raise_for_failures(self) -> None:
        if self.failures:
            raise FleetOperationError(self)


@dataclass
class RunOutcome(Generic[T]):
    measurements: MeasurementsCollection[T]
    load_statistics: LoadStatistics | None = None
    warnings: list[str] = field(default_factory=list)


class Orchestrator(ABC, Generic[T, N]):
    network_type: NetworkType

    def __init__(self, nodes: Sequence[N], protocol, settings: OrchestratorSettings | None = None) -> None:
        self.nodes: list[N] = list(nodes)
        self.protocol = protocol
        self.settings = settings or OrchestratorSettings()
        self._active: list[N] = []
        self._ready: list[N] = []
        self._load_generator: TransactionLoadGenerator | None = None

    # Transport hooks

    @abstractmethod
    async def setup(self) -> None: ...

    @abstractmethod
    async def _start_node(self, node: N, parameters: BenchmarkParameters[T]) -> None: ...

    @abstractmethod
    async def _kill_node(self, node: N) -> None: ...

    @abstractmethod
    async def _boot_node(self, node: N) -> None: ...

    @abstractmethod
    async def _stop_nodes(self, thorough: bool) -> None: ...

    @abstractmethod
    async def node_logs(self, node: N) -> str: ...

    async def _prepare(self, parameters: BenchmarkParameters[T]) -> None:
        """Fleet-wide step run once before nodes are started."""

    # Fleet operations

    @property
    def active_nodes(self) -> list[N]:
        return list(self._active)

    @property
    def ready_nodes(self) -> list[N]:
        return list(self._ready)

    def booted_nodes(self, parameters: BenchmarkParameters[T]) -> list[N]:
        """Nodes to start; permanently faulty nodes at the tail stay down."""
        faults = parameters.faults
        if isinstance(faults, PermanentFaults) and faults.faults > 0:
            return self.nodes[: -faults.faults]
        return list(self.nodes)

    async def _fan_out(
        self,
        operation: str,
        nodes: Sequence[N],
        action: Callable[[N], Awaitable[object]],
    ) -> FleetReport:
        results = await asyncio.gather(*(action(node) for node in nodes), return_exceptions=True)
        succeeded: list[str] = []
        failures: dict[str, BaseException] = {}
        for node, result in zip(nodes, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                LOGGER.warning("%s failed on %s: %s", operation, node.name, result)
                failures[node.name] = result
            else:
                succeeded.append(node.name)
        return FleetReport(operation=operation, succeeded=tuple(succeeded), failures=failures)

    async def start(self, parameters: BenchmarkParameters[T]) -> FleetReport:
        nodes = self.booted_nodes(parameters)
        LOGGER.info("Starting %d/%d node(s) for %s", len(nodes), len(self.nodes), parameters)
        await self._prepare(parameters)
        report = await self._fan_out("start", nodes, lambda node: self._start_node(node, parameters))
        self._active = [node for node in nodes if node.name in report.succeeded]
        report.raise_for_failures()
        LOGGER.info("All %d node(s) started", len(nodes))
        return report

    async def wait_ready(self, timeout: float | None = None) -> list[N]:
        timeout = self.settings.startup_timeout if timeout is None else timeout
        nodes = self._active
        if not nodes:
            raise ReadinessTimeoutError("no node was started")

        LOGGER.info("Waiting up to %.0fs for %d node(s) to become healthy", timeout, len(nodes))
        deadline = asyncio.get_running_loop().time() + timeout
        async with aiohttp.ClientSession() as session:
            healthy = await asyncio.gather(*(self._poll_health(session, node, deadline) for node in nodes))

        ready = [node for node, ok in zip(nodes, healthy) if ok]
        for node in (node for node, ok in zip(nodes, healthy) if not ok):
            await self._report_degraded(node)

        if not ready:
            raise ReadinessTimeoutError(f"no node became healthy within {timeout:.0f}s")
        self._ready = ready
        LOGGER.info("%d/%d node(s) ready", len(ready), len(nodes))
        return ready

    async def _poll_health(self, session: aiohttp.ClientSession, node: N, deadline: float) -> bool:
        loop = asyncio.get_running_loop()
        url = node.rpc_url(HEALTH_ROUTE)
        timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout)
        interval = self.settings.health_poll_interval
        while True:
            try:
                async with session.get(url, timeout=timeout) as response:
                    if 200 <= response.status < 300:
                        LOGGER.info("%s is ready at %s", node.name, url)
                        return True
                    LOGGER.debug("%s responded with status %d", node.name, response.status)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                LOGGER.debug("%s not ready yet: %s", node.name, exc)

            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(interval, remaining))
            interval = min(interval * 1.5, self.settings.max_health_poll_interval)

    async def _report_degraded(self, node: N) -> None:
        try:
            logs = await self.node_logs(node)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("%s is degraded; failed to fetch its logs: %s", node.name, exc)
            return
        tail = "\n".join(logs.strip().splitlines()[-20:])
        LOGGER.warning("%s is degraded; last log lines:\n%s", node.name, tail or "<empty>")

    async def drive_load(
        self,
        parameters: BenchmarkParameters[T],
        nodes: Sequence[N] | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> LoadStatistics:
        targets = self._ready if nodes is None else list(nodes)
        if session is None:
            async with aiohttp.ClientSession() as own_session:
                return await self._drive_load(parameters, targets, own_session)
        return await self._drive_load(parameters, targets, session)

    async def _drive_load(
        self,
        parameters: BenchmarkParameters[T],
        nodes: Sequence[N],
        session: aiohttp.ClientSession,
    ) -> LoadStatistics:
        self._load_generator = TransactionLoadGenerator(
            session,
            [node.rpc_url(SUBMIT_ROUTE) for node in nodes],
            transaction_size=self.protocol.transaction_size(parameters),
            request_timeout=self.settings.request_timeout,
            max_in_flight=self.settings.max_in_flight,
        )
        try:
            return await self._load_generator.run(parameters.load, parameters.duration)
        finally:
            self._load_generator = None

    async def collect_metrics(
        self,
        collection: MeasurementsCollection[T],
        session: aiohttp.ClientSession | None = None,
    ) -> int:
        """Scrape every active node once; returns the number of failed scrapes."""
        if session is None:
            async with aiohttp.ClientSession() as own_session:
                return await self._collect_metrics(collection, own_session)
        return await self._collect_metrics(collection, session)

    async def _collect_metrics(self, collection: MeasurementsCollection[T], session: aiohttp.ClientSession) -> int:
        targets = self.protocol.nodes_metrics_path(self._active or self.nodes)
        timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout)

        async def scrape(node: N, url: str) -> None:
            async with session.get(url, timeout=timeout) as response:
                response.raise_for_status()
                text = await response.text()
            for label, measurement in Measurement.from_prometheus(text, self.protocol).items():
                collection.add(node.authority_index, label, measurement)

        results = await asyncio.gather(*(scrape(node, url) for node, url in targets), return_exceptions=True)
        failed = 0
        for (node, url), result in zip(targets, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failed += 1
                LOGGER.warning("Failed to scrape %s at %s: %s", node.name, url, result)
        return failed

    async def _scrape_periodically(self, collection: MeasurementsCollection[T], session: aiohttp.ClientSession) -> None:
        while True:
            await asyncio.sleep(self.settings.scrape_interval)
            await self._collect_metrics(collection, session)

    async def _inject_faults(self, parameters: BenchmarkParameters[T]) -> None:
        faults = parameters.faults
        if not isinstance(faults, CrashRecoveryFaults) or faults.faults == 0:
            return
        schedule = CrashRecoverySchedule(faults, self.nodes)
        while True:
            await asyncio.sleep(faults.interval)
            action = schedule.update()
            if action.is_noop():
                continue
            LOGGER.info("Crash-recovery: %s", action)
            if action.kill:
                await self._fan_out("kill", action.kill, self._kill_node)
            if action.boot:
                await self._fan_out("boot", action.boot, self._boot_node)

    async def stop(self, thorough: bool | None = None) -> None:
        thorough = self.settings.thorough_cleanup if thorough is None else thorough
        if self._load_generator is not None:
            self._load_generator.stop()
        LOGGER.info("Stopping %s network%s", self.network_type.value.lower(), " (thorough)" if thorough else "")
        try:
            await self._stop_nodes(thorough)
        finally:
            self._active = []
            self._ready = []

    async def run_benchmark(self, parameters: BenchmarkParameters[T]) -> RunOutcome[T]:
        parameters.validate()
        if parameters.nodes != len(self.nodes):
            raise ConfigurationError(
                f"benchmark expects {parameters.nodes} node(s) but the fleet has {len(self.nodes)}"
            )

        collection: MeasurementsCollection[T] = MeasurementsCollection(parameters)
        warnings: list[str] = []
        statistics: LoadStatistics | None = None
        deadline = parameters.duration + self.settings.run_grace
        try:
            await self.setup()
            try:
                await self.start(parameters)
            except FleetOperationError as exc:
                if exc.fatal:
                    raise
                warnings.append(str(exc))

            ready = await self.wait_ready()
            expected = len(self.booted_nodes(parameters))
            if len(ready) < expected:
                message = f"only {len(ready)}/{expected} node(s) became ready"
                LOGGER.warning(message)
                warnings.append(message)

            async with aiohttp.ClientSession() as session:
                try:
                    statistics = await asyncio.wait_for(
                        self._measure(parameters, ready, collection, session),
                        timeout=deadline,
                    )
                except BenchmarkTimeoutError:
                    raise
                except asyncio.TimeoutError as exc:
                    raise RunTimeoutError(f"benchmark run did not finish within {deadline:.0f}s") from exc
        finally:
            try:
                await self.stop()
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Teardown failed: %s", exc)
            collection.finalize()

        return RunOutcome(measurements=collection, load_statistics=statistics, warnings=warnings)

    async def _measure(
        self,
        parameters: BenchmarkParameters[T],
        ready: Sequence[N],
        collection: MeasurementsCollection[T],
        session: aiohttp.ClientSession,
    ) -> LoadStatistics:
        background = [
            asyncio.create_task(self._scrape_periodically(collection, session)),
            asyncio.create_task(self._inject_faults(parameters)),
        ]
        try:
            statistics = await self._drive_load(parameters, ready, session)
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)

        failed = await self._collect_metrics(collection, session)
        if failed:
            LOGGER.warning("Final scrape failed on %d node(s)", failed)
        return statistics


__all__ = ["FleetReport", "HEALTH_ROUTE", "Orchestrator", "RunOutcome"]
