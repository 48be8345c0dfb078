"""Gateway engine: the per-process context object.

Builds the registry, health ledger, result cache, orchestrator, cleanup
policy, warmer, verifier and retry scheduler from one ``GatewaySettings``,
one ``KeyValueStore``, one ``FileStore`` and one ``httpx.AsyncClient``, and
exposes the operations the API layer and embedding applications call.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from cloudchan_gateway.config.gateways import load_default_gateways
from cloudchan_gateway.config.settings import GatewaySettings
from cloudchan_gateway.health.ledger import HealthLedger
from cloudchan_gateway.health.result_cache import CacheLookup, ResultCache
from cloudchan_gateway.middleware.error_handler import CacheWriteError, NoAvailableGatewayError
from cloudchan_gateway.models.gateway import Gateway, NetworkProfile
from cloudchan_gateway.models.records import FileRecord, ProbeRun, VerifyRetryEntry
from cloudchan_gateway.probe.orchestrator import ProbeOrchestrator
from cloudchan_gateway.probe.prober import GatewayProber
from cloudchan_gateway.propagation.warmer import PropagationSummary, PropagationWarmer
from cloudchan_gateway.registry.catalogue import GatewayRegistry
from cloudchan_gateway.registry.discovery import GatewayDiscovery
from cloudchan_gateway.resilience.cleanup import CleanupPolicy, CleanupReport
from cloudchan_gateway.selection.ranker import (
    PreferredGateway,
    annotate,
    rank_for_download,
    rank_for_probe,
)
from cloudchan_gateway.storage.files import FileStore
from cloudchan_gateway.storage.kv import KeyValueStore
from cloudchan_gateway.verify.checker import AvailabilityVerifier, VerifyOutcome
from cloudchan_gateway.verify.scheduler import VerificationScheduler

logger = logging.getLogger(__name__)


class GatewayEngine:
    """Health-probing, ranking, verification and warming for one process.

    Parameters
    ----------
    settings:
        Validated configuration.
    store:
        Persistence backend shared by every component.
    files:
        File-record collaborator for the verification scheduler.
    client:
        Shared HTTP client; the caller owns its lifetime.
    clock:
        Wall clock in seconds.
    sleep:
        Awaitable sleep used for retry delays.
    rand:
        Jitter source for the retry scheduler.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        store: KeyValueStore,
        files: FileStore,
        client: httpx.AsyncClient,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.settings = settings
        self.files = files
        self._clock = clock
        self._sleep = sleep

        self.registry = GatewayRegistry(
            store,
            load_default_gateways(settings.default_gateways_path),
            version=settings.catalogue_version,
            default_profile=settings.network_profile,
        )
        self.ledger = HealthLedger(
            store,
            profile=lambda: self.registry.network_profile,
            window_size=settings.health_window_size,
            history_expiry_days=settings.health_history_expiry_days,
            clock=clock,
        )
        self.preferred = PreferredGateway(store)
        self.prober = GatewayProber(
            client,
            timeout_ms=settings.probe_timeout_ms,
            retry_times=settings.probe_retry_times,
            retry_delay_ms=settings.probe_retry_delay_ms,
            range_fallback=settings.probe_range_fallback,
            clock=clock,
            sleep=sleep,
        )
        self.orchestrator = ProbeOrchestrator(
            self.prober,
            self.ledger,
            self.preferred,
            sweep_concurrency=settings.probe_concurrency,
            race_batch_size=settings.race_batch_size,
            clock=clock,
        )
        self.cache = ResultCache(
            store,
            version=self.cache_version,
            expiry_seconds=settings.cache_expiry_seconds,
            compress_threshold_bytes=settings.cache_compress_threshold_bytes,
            clock=clock,
        )
        self.cleanup = CleanupPolicy(
            max_failure_count=settings.cleanup_max_failure_count,
            max_consecutive_failures=settings.cleanup_max_consecutive_failures,
            max_unused_days=settings.cleanup_max_unused_days,
            min_health_score=settings.cleanup_min_health_score,
            protected_priority=settings.protected_priority_threshold,
            enabled=settings.cleanup_enabled,
            clock=clock,
        )
        self.discovery = GatewayDiscovery(
            client,
            settings.public_gateway_sources,
            timeout_seconds=settings.discovery_timeout_seconds,
        )
        self.warmer = PropagationWarmer(
            client,
            concurrency=settings.propagation_concurrency,
            timeout_ms=settings.propagation_timeout_ms,
            range_bytes=settings.propagation_range_bytes,
            max_gateways=settings.propagation_max_gateways,
            sleep=sleep,
        )
        self.verifier = AvailabilityVerifier(
            client,
            self.prober,
            self.preferred,
            method=settings.verify_method,
            max_retries=settings.verify_max_retries,
            parallel_gateways=settings.verify_parallel_gateways,
            range_parallel=settings.verify_range_parallel,
            range_fallback=settings.probe_range_fallback,
            head_timeout_ms=settings.probe_timeout_ms,
            full_timeout_ms=settings.verify_full_timeout_ms,
            round_delay_ms=settings.race_retry_delay_ms,
            sleep=sleep,
        )
        self.scheduler = VerificationScheduler(
            store,
            files,
            verify=self._verify_cid,
            propagate=self.propagate_in_background,
            enabled=settings.verify_retry_enabled,
            max_attempts=settings.verify_max_attempts,
            base_delay_ms=settings.verify_base_delay_ms,
            max_delay_ms=settings.verify_max_delay_ms,
            jitter_ms=settings.verify_jitter_ms,
            busy_delay_cap_ms=settings.verify_busy_delay_cap_ms,
            failed_window_ms=settings.verify_failed_window_seconds * 1000,
            stuck_window_ms=settings.verify_stuck_window_seconds * 1000,
            clock=clock,
            rand=rand,
        )

        self._refresh_lock = asyncio.Lock()
        self._current: ProbeRun | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    def cache_version(self) -> str:
        """Cached runs are valid only for this build and this catalogue."""
        return (
            f"{self.settings.cache_version}-{self.settings.catalogue_version}-"
            f"{self.registry.signature()}"
        )

    async def start(self, *, run_supervisor: bool = True) -> None:
        self.registry.load()
        self.ledger.load()
        lookup = self.cache.load()
        if lookup.hit and lookup.run is not None:
            self._current = lookup.run
            annotate(self.registry.all(), lookup.run.results, self.ledger)
        armed = self.scheduler.resync_timers()
        if run_supervisor:
            self.scheduler.start()
        self._started = True
        logger.info(
            "Gateway engine started: %d gateways, %d health records, %d retry timers",
            len(self.registry),
            len(self.ledger),
            armed,
        )

    async def shutdown(self, timeout: float = 10.0) -> None:
        await self.scheduler.stop()
        await self.warmer.drain(timeout=timeout)
        pending = list(self._background)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self.ledger.save()
        self._started = False
        logger.info("Gateway engine stopped")

    def _track(self, coro: Awaitable[Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Probing and selection
    # ------------------------------------------------------------------

    def _store_run(self, run: ProbeRun) -> None:
        try:
            self.cache.save(run)
        except CacheWriteError as exc:
            logger.warning("Probe result cache write failed: %s", exc.message)

    async def refresh(self, *, force: bool = False) -> CacheLookup:
        """Return the current run, sweeping when the cache misses or ``force``."""
        async with self._refresh_lock:
            if not force:
                lookup = self.cache.load()
                if lookup.hit and lookup.run is not None:
                    self._current = lookup.run
                    annotate(self.registry.all(), lookup.run.results, self.ledger)
                    return lookup

            candidates = rank_for_probe(self.registry.all(), self.ledger)
            run = await self.orchestrator.sweep(
                candidates, self.settings.test_cid, version=self.cache_version()
            )
            annotate(self.registry.all(), run.results, self.ledger)

            if self.settings.auto_cleanup:
                report = self.cleanup.perform_cleanup(self.registry, self.ledger, commit=True)
                if report.cleaned:
                    run = ProbeRun.build(
                        [r for r in run.results if r.url in self.registry],
                        timestamp=run.timestamp,
                        version=self.cache_version(),
                    )

            self._current = run
            self._store_run(run)
            return CacheLookup(run=run, age_seconds=0, is_expired=False)

    async def ranked_gateways(self, *, refresh: bool = False) -> tuple[list[Gateway], CacheLookup]:
        """Download ordering over the whole catalogue, plus the run it came from."""
        lookup = await self.refresh(force=refresh)
        results = lookup.run.results if lookup.run is not None else ()
        return rank_for_download(annotate(self.registry.all(), results, self.ledger)), lookup

    async def best_gateway(self, cid: str | None = None) -> Gateway:
        """Race for a gateway that serves ``cid`` right now.

        Raises
        ------
        NoAvailableGatewayError
            If every round of racing fails.
        """
        target = cid or self.settings.test_cid
        rounds = self.settings.race_retry_rounds
        for round_no in range(1, rounds + 1):
            candidates = rank_for_probe(self.registry.all(), self.ledger)
            winner = await self.orchestrator.race(candidates, target)
            if winner is not None:
                gateway = self.registry.get(winner.url)
                if gateway is None:
                    gateway = Gateway(name=winner.name, url=winner.url)
                annotate([gateway], [winner], self.ledger)
                return gateway
            if round_no < rounds:
                await self._sleep(self.settings.race_retry_delay_ms / 1000)
        raise NoAvailableGatewayError(cid=target)

    # ------------------------------------------------------------------
    # Catalogue management
    # ------------------------------------------------------------------

    def add_gateway(self, url: str, **fields: Any) -> tuple[Gateway, bool]:
        return self.registry.add(url, **fields)

    def remove_gateway(self, url: str) -> Gateway:
        removed = self.registry.remove(url)
        self.preferred.forget(removed.url)
        return removed

    async def discover(self) -> list[Gateway]:
        found = await self.discovery.discover(g.url for g in self.registry.all())
        return self.registry.merge(found)

    def cleanup_report(self) -> CleanupReport:
        return self.cleanup.perform_cleanup(self.registry, self.ledger, commit=False)

    def commit_cleanup(self) -> CleanupReport:
        return self.cleanup.perform_cleanup(self.registry, self.ledger, commit=True)

    @property
    def network_profile(self) -> NetworkProfile:
        return self.registry.network_profile

    def set_network_profile(self, value: str) -> NetworkProfile:
        return self.registry.set_network_profile(value)

    # ------------------------------------------------------------------
    # Propagation
    # ------------------------------------------------------------------

    def _warm_candidates(self) -> list[Gateway]:
        results = self._current.results if self._current is not None else ()
        return annotate(self.registry.all(), results, self.ledger)

    async def _refresh_then_warm(self, cid: str, max_gateways: int | None) -> PropagationSummary:
        await self.refresh()
        return await self.warmer.smart_propagate(cid, self._warm_candidates(), max_gateways)

    def propagate_in_background(self, cid: str, max_gateways: int | None = None) -> asyncio.Task[Any]:
        """Start smart warming for ``cid`` without waiting for it."""
        if self._current is None:
            return self._track(self._refresh_then_warm(cid, max_gateways), f"warm-{cid[:16]}")
        return self.warmer.start_background(cid, self._warm_candidates(), max_gateways)

    def propagate_aggressively(self, cid: str) -> asyncio.Task[Any]:
        return self._track(
            self.warmer.aggressive_propagate(cid, self._warm_candidates()),
            f"warm-aggressive-{cid[:16]}",
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def _verify_cid(self, cid: str, content_hash: str | None) -> VerifyOutcome:
        candidates = rank_for_probe(self.registry.all(), self.ledger)
        return await self.verifier.verify(cid, candidates, expected_hash=content_hash)

    def record_upload(
        self,
        file_id: str,
        cid: str,
        *,
        name: str = "",
        content_hash: str | None = None,
    ) -> FileRecord:
        """Register a (re-)upload: reset to pending, warm, enroll for retries."""
        record = self.files.get(file_id) or FileRecord(id=file_id, cid=cid)
        record.cid = cid
        record.name = name or record.name
        record.hash = content_hash
        record.uploaded_at = int(self._clock() * 1000)
        self.scheduler.enroll_upload(record)
        self.propagate_in_background(cid)
        return self.files.get(file_id) or record

    async def verify_now(self, file_id: str) -> VerifyOutcome:
        return await self.scheduler.retry_now(file_id)

    def retry_entries(self) -> dict[str, VerifyRetryEntry]:
        return self.scheduler.load_state()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        lookup = self.cache.load()
        run = self._current
        return {
            "gateways": len(self.registry),
            "health_records": len(self.ledger),
            "network_profile": self.network_profile.value,
            "preferred_gateway": self.preferred.get(),
            "last_run": run.statistics.to_dict() if run is not None else None,
            "cache": {
                "hit": lookup.hit,
                "age_seconds": lookup.age_seconds,
                "version": self.cache_version(),
            },
        }
