"""Shared fixtures: measurement factories, fake nodes and stub executables."""

from __future__ import annotations

import stat
from pathlib import Path
from typing import Any, Callable

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from bftbench.benchmark import BenchmarkParameters
from bftbench.client import Instance, Node
from bftbench.measurement import DEFAULT_LABEL, Measurement, MeasurementsCollection
from bftbench.protocol.mysticeti import MysticetiBenchmarkType


def make_parameters(load: int = 100, nodes: int = 4, **kwargs: Any) -> BenchmarkParameters[MysticetiBenchmarkType]:
    return BenchmarkParameters(MysticetiBenchmarkType(512), nodes=nodes, load=load, **kwargs)


def make_collection(
    load: int,
    tps: int,
    latency: float,
    elapsed: float = 10.0,
    label: str = DEFAULT_LABEL,
) -> MeasurementsCollection[MysticetiBenchmarkType]:
    """A finalized single-scraper collection reporting ``tps`` at ``latency`` seconds."""
    collection = MeasurementsCollection(make_parameters(load=load))
    count = int(tps * elapsed)
    collection.add(
        0,
        label,
        Measurement(
            count=count,
            sum=latency * count,
            squared_sum=latency**2 * count,
            elapsed=elapsed,
        ),
    )
    return collection.finalize()


def node_at(index: int, port: int, metrics_port: int | None = None) -> Node:
    return Node(
        instance=Instance(id=f"test-{index}", main_ip="127.0.0.1"),
        authority_index=index,
        rpc_port=port,
        abci_port=26670 + index,
        metrics_port=port if metrics_port is None else metrics_port,
    )


def metrics_text(count: int, total: float, squared: float, elapsed: float, workload: str = "shared") -> str:
    return "\n".join(
        [
            "# HELP benchmark_duration Seconds since the benchmark started",
            "# TYPE benchmark_duration gauge",
            f"benchmark_duration {elapsed}",
            "# HELP latency_s Transaction latency",
            "# TYPE latency_s histogram",
            f'latency_s_bucket{{workload="{workload}",le="0.5"}} {count // 2}',
            f'latency_s_bucket{{workload="{workload}",le="+Inf"}} {count}',
            f'latency_s_sum{{workload="{workload}"}} {total}',
            f'latency_s_count{{workload="{workload}"}} {count}',
            "# HELP latency_squared_s Sum of squared latencies",
            "# TYPE latency_squared_s counter",
            f'latency_squared_s_total{{workload="{workload}"}} {squared}',
            "",
        ]
    )


class FakeNodeServer:
    """In-process node exposing health, transaction submission and metrics routes."""

    def __init__(self, healthy: bool = True, metrics: str = "", reject_transactions: bool = False) -> None:
        self.healthy = healthy
        self.metrics = metrics
        self.reject_transactions = reject_transactions
        self.transactions: list[dict[str, Any]] = []
        self.server: TestServer | None = None

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health)
        app.router.add_post("/broadcast_tx_async", self._broadcast)
        app.router.add_get("/metrics", self._metrics)
        return app

    async def _health(self, request: web.Request) -> web.Response:
        if not self.healthy:
            return web.Response(status=503)
        return web.json_response({"status": "ok"})

    async def _broadcast(self, request: web.Request) -> web.Response:
        self.transactions.append(await request.json())
        if self.reject_transactions:
            return web.Response(status=500)
        return web.json_response({"accepted": True})

    async def _metrics(self, request: web.Request) -> web.Response:
        return web.Response(text=self.metrics, content_type="text/plain")

    @property
    def port(self) -> int:
        assert self.server is not None
        return self.server.port


@pytest.fixture
async def node_servers() -> Any:
    """Factory starting :class:`FakeNodeServer` instances, closed after the test."""
    started: list[FakeNodeServer] = []

    async def _factory(**kwargs: Any) -> FakeNodeServer:
        fake = FakeNodeServer(**kwargs)
        fake.server = TestServer(fake.app())
        await fake.server.start_server()
        started.append(fake)
        return fake

    yield _factory

    for fake in started:
        if fake.server is not None:
            await fake.server.close()


@pytest.fixture
def stub_executable(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write an executable shell script to ``tmp_path`` and return its path."""

    def _factory(name: str, body: str) -> Path:
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _factory

