from __future__ import annotations

import asyncio
import base64
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Sequence

import aiohttp

LOGGER = logging.getLogger("bftbench.load")

SUBMIT_ROUTE = "/broadcast_tx_async"
TICKS_PER_SECOND = 10


@dataclass
class LoadStatistics:
    successful: int
    failed: int
    started_at: float
    finished_at: float
    timed_out: bool = False

    @property
    def submitted(self) -> int:
        return self.successful + self.failed

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def realized_rate(self) -> float:
        if self.duration_s == 0:
            return 0.0
        return self.successful / self.duration_s

    def to_dict(self) -> dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "timed_out": self.timed_out,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoadStatistics:
        return cls(
            successful=int(data["successful"]),
            failed=int(data["failed"]),
            started_at=float(data["started_at"]),
            finished_at=float(data["finished_at"]),
            timed_out=bool(data.get("timed_out", False)),
        )


def make_transaction(sequence: int, size: int) -> bytes:
    """A ``size``-byte payload whose leading bytes carry the sequence number."""
    prefix = sequence.to_bytes(8, "big")
    if size <= len(prefix):
        return prefix[-size:] if size > 0 else b""
    return prefix + bytes(size - len(prefix))


class TransactionLoadGenerator:
    """Fixed-rate transaction submitter spreading load round-robin over nodes.

    Submission is best effort: the rate is approached in bursts every
    ``1 / TICKS_PER_SECOND`` seconds and bounded by ``max_in_flight`` requests.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        endpoints: Sequence[str],
        transaction_size: int,
        request_timeout: float = 5.0,
        max_in_flight: int = 1_000,
    ) -> None:
        self._session = session
        self._endpoints = list(endpoints)
        self._transaction_size = transaction_size
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._stop_event = asyncio.Event()
        self._successful = 0
        self._failed = 0

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self, rate: int, duration: float) -> LoadStatistics:
        total = int(rate * duration)
        started_at = time.time()
        if not self._endpoints:
            LOGGER.warning("No ready nodes to submit to; counting %d transaction(s) as failed", total)
            return LoadStatistics(0, total, started_at, time.time())
        if rate <= 0:
            return LoadStatistics(0, 0, started_at, time.time())

        LOGGER.info(
            "Submitting %d transaction(s) of %d bytes at %d tx/s to %d node(s)",
            total,
            self._transaction_size,
            rate,
            len(self._endpoints),
        )

        loop = asyncio.get_running_loop()
        endpoints = itertools.cycle(self._endpoints)
        tasks: set[asyncio.Task[None]] = set()
        per_tick = rate / TICKS_PER_SECOND
        tick = 1.0 / TICKS_PER_SECOND
        credit = 0.0
        sent = 0
        deadline = loop.time()

        try:
            while sent < total and not self._stop_event.is_set():
                credit += per_tick
                burst = min(int(credit), total - sent)
                credit -= burst
                for _ in range(burst):
                    await self._semaphore.acquire()
                    task = asyncio.create_task(self._submit(next(endpoints), sent))
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                    sent += 1
                deadline += tick
                delay = deadline - loop.time()
                if delay > 0:
                    try:
                        await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    except asyncio.TimeoutError:
                        pass
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if sent < total:
            LOGGER.warning("Load stopped early after %d/%d transaction(s)", sent, total)

        statistics = LoadStatistics(
            successful=self._successful,
            failed=self._failed,
            started_at=started_at,
            finished_at=time.time(),
            timed_out=sent < total,
        )
        LOGGER.info(
            "Load complete in %.2fs: %d successful, %d failed, %.2f tx/s",
            statistics.duration_s,
            statistics.successful,
            statistics.failed,
            statistics.realized_rate,
        )
        return statistics

    async def _submit(self, endpoint: str, sequence: int) -> None:
        transaction = make_transaction(sequence, self._transaction_size)
        payload = {"transaction": base64.b64encode(transaction).decode("ascii")}
        try:
            async with self._session.post(endpoint, json=payload, timeout=self._timeout) as response:
                if 200 <= response.status < 300:
                    self._successful += 1
                    if sequence % 1_000 == 0:
                        LOGGER.info("Submitted transaction %d to %s", sequence, endpoint)
                else:
                    self._failed += 1
                    LOGGER.debug("Transaction %d rejected by %s with status %d", sequence, endpoint, response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self._failed += 1
            LOGGER.debug("Transaction %d to %s failed: %s", sequence, endpoint, exc)
        finally:
            self._semaphore.release()


__all__ = ["LoadStatistics", "TransactionLoadGenerator", "make_transaction", "SUBMIT_ROUTE"]
