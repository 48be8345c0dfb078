"""Propagation warming.

Best-effort small-range GETs against healthy gateways so they fetch and
cache a freshly uploaded object. Requests run on a bounded worker pool fed by
an ``asyncio.Queue``; individual failures only count towards the summary and
are never raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from cloudchan_gateway.models.gateway import Gateway
from cloudchan_gateway.selection.ranker import rank_for_warm

logger = logging.getLogger(__name__)

_RANGE_NOT_SATISFIABLE = 416


@dataclass(frozen=True)
class WarmResult:
    url: str
    success: bool
    cached: bool = False
    latency_ms: int = -1
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "success": self.success,
            "cached": self.cached,
            "latencyMs": self.latency_ms,
            "error": self.error,
        }


@dataclass
class PropagationSummary:
    cid: str
    results: list[WarmResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def cached(self) -> int:
        return sum(1 for r in self.results if r.cached)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cid": self.cid,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cached": self.cached,
            "details": [r.to_dict() for r in self.results],
        }


class _Stop:
    """Queue sentinel telling a worker to exit."""


def _is_cache_hit(response: httpx.Response) -> bool:
    return (
        response.headers.get("x-ipfs-cached", "").lower() == "true"
        or response.headers.get("x-cache-status", "").upper() == "HIT"
    )


class PropagationWarmer:
    """Fans warming requests out over a bounded worker pool.

    Parameters
    ----------
    client:
        Shared async HTTP client.
    concurrency:
        Number of workers per propagation.
    timeout_ms:
        Per-request timeout.
    range_bytes:
        Size of the leading range requested from each gateway.
    max_gateways:
        Default slice size for ``smart_propagate``.
    sleep:
        Awaitable sleep used between aggressive rounds.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        concurrency: int = 5,
        timeout_ms: int = 15000,
        range_bytes: int = 1024,
        max_gateways: int = 8,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._concurrency = concurrency
        self._timeout_s = timeout_ms / 1000
        self._range_bytes = range_bytes
        self._max_gateways = max_gateways
        self._sleep = sleep
        self._background: set[asyncio.Task[PropagationSummary]] = set()
        self._completed = 0
        self._last_summary: PropagationSummary | None = None

    # ------------------------------------------------------------------
    # Single gateway
    # ------------------------------------------------------------------

    async def _fetch_leading_bytes(self, url: str, headers: dict[str, str]) -> httpx.Response:
        request = self._client.build_request("GET", url, headers=headers, timeout=self._timeout_s)
        response = await self._client.send(request, stream=True)
        try:
            if 200 <= response.status_code < 300:
                async for _chunk in response.aiter_raw():
                    break
        finally:
            await response.aclose()
        return response

    async def warm_gateway(self, gateway: Gateway, cid: str) -> WarmResult:
        url = gateway.object_url(cid)
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._fetch_leading_bytes(
                    url,
                    {"Range": f"bytes=0-{self._range_bytes - 1}", "Cache-Control": "no-cache"},
                ),
                timeout=self._timeout_s,
            )
            if response.status_code == _RANGE_NOT_SATISFIABLE:
                response = await asyncio.wait_for(
                    self._fetch_leading_bytes(url, {"Cache-Control": "no-cache"}),
                    timeout=self._timeout_s,
                )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            return WarmResult(url=gateway.url, success=False, error=type(exc).__name__)

        latency_ms = round((time.perf_counter() - started) * 1000)
        if 200 <= response.status_code < 300:
            return WarmResult(
                url=gateway.url,
                success=True,
                cached=_is_cache_hit(response),
                latency_ms=latency_ms,
            )
        return WarmResult(
            url=gateway.url,
            success=False,
            latency_ms=latency_ms,
            error=f"HTTP {response.status_code}",
        )

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def propagate(
        self,
        cid: str,
        gateways: Sequence[Gateway],
        *,
        concurrency: int | None = None,
    ) -> PropagationSummary:
        """Warm every gateway in ``gateways`` with bounded concurrency."""
        summary = PropagationSummary(cid=cid)
        if not gateways:
            return summary

        queue: asyncio.Queue[Gateway | _Stop] = asyncio.Queue()
        for gateway in gateways:
            queue.put_nowait(gateway)
        worker_count = min(concurrency or self._concurrency, len(gateways))
        for _ in range(worker_count):
            queue.put_nowait(_Stop())

        async def worker() -> None:
            while True:
                item = await queue.get()
                if isinstance(item, _Stop):
                    return
                try:
                    result = await self.warm_gateway(item, cid)
                except Exception as exc:
                    logger.warning(
                        "Warming %s failed unexpectedly: %s",
                        item.url,
                        exc,
                        extra={"gateway_url": item.url, "cid": cid},
                    )
                    result = WarmResult(url=item.url, success=False, error=str(exc))
                summary.results.append(result)

        await asyncio.gather(*(worker() for _ in range(worker_count)))
        return summary

    async def smart_propagate(
        self,
        cid: str,
        gateways: Sequence[Gateway],
        max_gateways: int | None = None,
    ) -> PropagationSummary:
        """Warm the fastest available gateways."""
        targets = rank_for_warm(gateways, max_gateways or self._max_gateways)
        summary = await self.propagate(cid, targets)
        self._record(summary)
        return summary

    async def aggressive_propagate(
        self,
        cid: str,
        gateways: Sequence[Gateway],
        *,
        rounds: int = 3,
        delay_between_rounds_ms: int = 5000,
    ) -> list[PropagationSummary]:
        """Several rounds; gateways that already succeeded are skipped."""
        warmed: set[str] = set()
        summaries: list[PropagationSummary] = []
        for round_no in range(1, rounds + 1):
            pending = [g for g in gateways if g.available and g.url not in warmed]
            if not pending:
                logger.info("All gateways warmed after %d rounds", round_no - 1, extra={"cid": cid})
                break
            summary = await self.propagate(cid, pending, concurrency=max(self._concurrency, 8))
            warmed.update(r.url for r in summary.results if r.success)
            summaries.append(summary)
            self._record(summary)
            if round_no < rounds:
                await self._sleep(delay_between_rounds_ms / 1000)
        return summaries

    # ------------------------------------------------------------------
    # Fire-and-forget
    # ------------------------------------------------------------------

    def start_background(
        self,
        cid: str,
        gateways: Sequence[Gateway],
        max_gateways: int | None = None,
    ) -> asyncio.Task[PropagationSummary]:
        """Schedule ``smart_propagate`` without waiting for it."""
        task = asyncio.create_task(
            self.smart_propagate(cid, list(gateways), max_gateways),
            name=f"propagate-{cid[:16]}",
        )
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task[PropagationSummary]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background propagation failed: %s", exc)
            return
        summary = task.result()
        logger.info(
            "Propagated %s to %d/%d gateways (%d cached)",
            summary.cid[:16],
            summary.succeeded,
            summary.total,
            summary.cached,
            extra={"cid": summary.cid},
        )

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for background propagations, cancelling stragglers."""
        if not self._background:
            return
        pending_tasks = list(self._background)
        _, pending = await asyncio.wait(pending_tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _record(self, summary: PropagationSummary) -> None:
        self._completed += 1
        self._last_summary = summary

    def get_stats(self) -> dict:
        return {
            "in_flight": len(self._background),
            "completed": self._completed,
            "last": self._last_summary.to_dict() if self._last_summary else None,
        }
