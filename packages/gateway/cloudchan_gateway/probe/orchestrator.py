"""Probe orchestration: full sweeps and first-success races.

A sweep probes every gateway to completion in fixed-size chunks; chunk N+1
starts only after chunk N has settled. A race probes batches of gateways
concurrently and cancels the siblings as soon as one succeeds. Every settled,
non-cancelled probe is folded into the health ledger.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from cloudchan_gateway.health.ledger import HealthLedger
from cloudchan_gateway.models.gateway import Gateway, ProbeResult
from cloudchan_gateway.models.records import ProbeRun
from cloudchan_gateway.probe.prober import GatewayProber
from cloudchan_gateway.selection.ranker import PreferredGateway

logger = logging.getLogger(__name__)

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


async def first_success(
    attempts: Sequence[Callable[[asyncio.Event], Awaitable[T]]],
    is_success: Callable[[T], bool],
) -> tuple[T | None, list[T]]:
    """Run ``attempts`` concurrently; the first success cancels the rest.

    Each attempt receives the shared cancellation event. Returns the winning
    value (or ``None``) and every value that settled.
    """
    cancel = asyncio.Event()
    tasks = [asyncio.ensure_future(attempt(cancel)) for attempt in attempts]
    winner: T | None = None
    settled: list[T] = []
    try:
        for next_done in asyncio.as_completed(tasks):
            try:
                value = await next_done
            except Exception as exc:
                logger.debug("Race attempt failed: %s", exc)
                continue
            settled.append(value)
            if is_success(value):
                winner = value
                break
    finally:
        cancel.set()
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    return winner, settled


class ProbeOrchestrator:
    """Runs the prober over many gateways and records outcomes.

    Parameters
    ----------
    prober:
        Single-gateway probe.
    ledger:
        Health ledger fed with every settled probe.
    preferred:
        Sticky preferred-gateway memory updated by races.
    sweep_concurrency:
        Chunk size of a full sweep.
    race_batch_size:
        Number of gateways raced at once.
    clock:
        Wall clock in seconds, used for run timestamps.
    """

    def __init__(
        self,
        prober: GatewayProber,
        ledger: HealthLedger,
        preferred: PreferredGateway,
        *,
        sweep_concurrency: int = 6,
        race_batch_size: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._prober = prober
        self._ledger = ledger
        self._preferred = preferred
        self._sweep_concurrency = sweep_concurrency
        self._race_batch_size = race_batch_size
        self._clock = clock

    async def _record(self, result: ProbeResult) -> ProbeResult:
        if result.cancelled:
            return result
        record = await self._ledger.update(result.url, result)
        result.health_score = record.health_score or 0
        result.reliability = record.reliability
        return result

    async def _probe_and_record(
        self,
        gateway: Gateway,
        cid: str,
        cancel: asyncio.Event | None = None,
    ) -> ProbeResult:
        result = await self._prober.probe(gateway, cid, cancel=cancel)
        return await self._record(result)

    async def sweep(self, gateways: Sequence[Gateway], cid: str, *, version: str) -> ProbeRun:
        """Probe every gateway to completion and return the run."""
        results: list[ProbeResult] = []
        for chunk in chunked(gateways, self._sweep_concurrency):
            settled = await asyncio.gather(
                *(self._probe_and_record(g, cid) for g in chunk)
            )
            results.extend(settled)
        self._ledger.save()

        run = ProbeRun.build(results, timestamp=int(self._clock() * 1000), version=version)
        logger.info(
            "Sweep finished: %d/%d gateways available",
            run.statistics.available,
            run.statistics.total,
            extra={"cid": cid},
        )
        return run

    async def race(self, gateways: Sequence[Gateway], cid: str) -> ProbeResult | None:
        """Return the first gateway that serves ``cid``, or ``None``.

        The preferred gateway, if any, is probed alone first. The remaining
        gateways are raced batch by batch; the winner becomes preferred and a
        failing preferred gateway is forgotten.
        """
        ordered = self._preferred.first(gateways)
        preferred_url = self._preferred.get()
        try:
            if ordered and ordered[0].url == preferred_url:
                result = await self._probe_and_record(ordered[0], cid)
                if result.available:
                    return result
                self._preferred.forget(preferred_url)
                ordered = ordered[1:]

            for batch in chunked(ordered, self._race_batch_size):
                winner, _ = await first_success(
                    [self._racer(g, cid) for g in batch],
                    lambda r: r.available,
                )
                if winner is not None:
                    self._preferred.remember(winner.url)
                    return winner
            return None
        finally:
            self._ledger.save()

    def _racer(self, gateway: Gateway, cid: str) -> Callable[[asyncio.Event], Awaitable[ProbeResult]]:
        async def run(cancel: asyncio.Event) -> ProbeResult:
            return await self._probe_and_record(gateway, cid, cancel)

        return run
