"""Per-gateway health ledger.

Cumulative success/failure counters keyed by gateway URL, independent of any
single probe run. Each update is an atomic read-modify-write for its key:
a per-URL ``asyncio.Lock`` serialises concurrent probe completions for the
same gateway.

The ledger is persisted as ``{"timestamp": ms, "data": {url: record}}`` and
discarded on load once older than the history expiry.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable

from cloudchan_gateway.models.gateway import NetworkProfile, ProbeResult, Region
from cloudchan_gateway.models.records import HealthRecord
from cloudchan_gateway.storage.kv import HEALTH_HISTORY_KEY, KeyValueStore

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 50

# (upper bound exclusive in ms, score)
_LATENCY_TIERS = (
    (500, 100),
    (1000, 85),
    (2000, 70),
    (5000, 50),
    (10000, 30),
)
_SLOWEST_SCORE = 20


def latency_score(latency_ms: int) -> int:
    """Score a successful probe by its latency tier."""
    for bound, score in _LATENCY_TIERS:
        if latency_ms < bound:
            return score
    return _SLOWEST_SCORE


def region_bonus(region: Region, profile: NetworkProfile) -> int:
    """Bonus for a gateway whose region suits the declared network profile."""
    if profile is NetworkProfile.INTL:
        return 10 if region is not Region.CN else 0
    # CN and AUTO both favour mainland gateways.
    return 15 if region is Region.CN else 0


def health_score(latency_ms: int, region: Region, profile: NetworkProfile) -> int:
    return min(100, latency_score(latency_ms) + region_bonus(region, profile))


class HealthLedger:
    """Cumulative health records for every probed gateway.

    Parameters
    ----------
    store:
        Persistence backend.
    profile:
        Callable returning the current network profile.
    window_size:
        Number of recent outcomes kept for the reliability figure.
    history_expiry_days:
        Persisted history older than this is discarded on load.
    clock:
        Wall clock in seconds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        profile: Callable[[], NetworkProfile] = lambda: NetworkProfile.AUTO,
        window_size: int = 10,
        history_expiry_days: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._profile = profile
        self._window_size = window_size
        self._expiry_ms = history_expiry_days * 24 * 60 * 60 * 1000
        self._clock = clock
        self._records: dict[str, HealthRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _lock_for(self, url: str) -> asyncio.Lock:
        lock = self._locks.get(url)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[url] = lock
        return lock

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def update(self, url: str, result: ProbeResult) -> HealthRecord:
        """Fold one probe outcome into the record for ``url``."""
        async with self._lock_for(url):
            return self.apply(url, result)

    def apply(self, url: str, result: ProbeResult) -> HealthRecord:
        """Synchronous read-modify-write used under the per-key lock."""
        now = self._now_ms()
        existing = self._records.get(url) or HealthRecord()
        recent = (existing.recent + [result.available])[-self._window_size:]

        if result.available:
            updated = HealthRecord(
                success_count=existing.success_count + 1,
                failure_count=existing.failure_count,
                consecutive_failures=0,
                last_success_time=now,
                last_failure_time=existing.last_failure_time,
                last_check_time=now,
                health_score=health_score(result.latency_ms, result.region, self._profile()),
                latency=result.latency_ms,
                recent=recent,
            )
        else:
            updated = HealthRecord(
                success_count=existing.success_count,
                failure_count=existing.failure_count + 1,
                consecutive_failures=existing.consecutive_failures + 1,
                last_success_time=existing.last_success_time,
                last_failure_time=now,
                last_check_time=now,
                health_score=0,
                latency=-1,
                recent=recent,
            )

        self._records[url] = updated
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, url: str) -> HealthRecord | None:
        return self._records.get(url)

    def snapshot(self) -> dict[str, HealthRecord]:
        return dict(self._records)

    def score_of(self, url: str, default: int = NEUTRAL_SCORE) -> int:
        record = self._records.get(url)
        if record is None or record.health_score is None:
            return default
        return record.health_score

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Replace in-memory records with the persisted history, if fresh."""
        self._records = {}
        raw = self._store.get(HEALTH_HISTORY_KEY)
        if not raw:
            return
        try:
            payload = json.loads(raw)
            timestamp = int(payload.get("timestamp") or 0)
            data = payload.get("data") or {}
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
            logger.warning("Persisted health history is unparsable, starting empty")
            return

        if self._now_ms() - timestamp >= self._expiry_ms:
            logger.info("Persisted health history expired, starting empty")
            return

        if not isinstance(data, dict):
            logger.warning("Persisted health history has no record map, starting empty")
            return

        for url, item in data.items():
            if not isinstance(item, dict):
                continue
            try:
                self._records[url] = HealthRecord.from_dict(item)
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping malformed health record for %s: %s", url, exc)
        logger.info("Loaded health history for %d gateways", len(self._records))


    def save(self) -> None:
        payload = {
            "timestamp": self._now_ms(),
            "data": {url: record.to_dict() for url, record in self._records.items()},
        }
        try:
            self._store.set(HEALTH_HISTORY_KEY, json.dumps(payload))
        except OSError as exc:
            logger.error("Failed to persist health history: %s", exc)
