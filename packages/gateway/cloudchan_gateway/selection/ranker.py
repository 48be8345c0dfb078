"""Gateway ordering for each intent, plus the sticky preferred gateway."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from cloudchan_gateway.health.ledger import NEUTRAL_SCORE, HealthLedger
from cloudchan_gateway.models.gateway import Gateway, ProbeResult
from cloudchan_gateway.storage.kv import PREFERRED_GATEWAY_KEY, KeyValueStore

logger = logging.getLogger(__name__)


def rank_for_probe(gateways: Iterable[Gateway], ledger: HealthLedger) -> list[Gateway]:
    """Static priority first, then ledger score (never-probed gateways score neutral)."""
    return sorted(
        gateways,
        key=lambda g: (g.priority, -ledger.score_of(g.url, NEUTRAL_SCORE)),
    )


def _is_up(gateway: Gateway) -> bool:
    return bool(gateway.available) and gateway.latency_ms >= 0


def rank_for_download(gateways: Iterable[Gateway]) -> list[Gateway]:
    """Available gateways by latency, then the rest by static priority."""
    pool = list(gateways)
    up = sorted(
        (g for g in pool if _is_up(g)),
        key=lambda g: (g.latency_ms, -(g.health_score or 0), g.priority),
    )
    down = sorted((g for g in pool if not _is_up(g)), key=lambda g: g.priority)
    return up + down


def rank_for_warm(gateways: Iterable[Gateway], limit: int) -> list[Gateway]:
    """Fastest available gateways, at most ``limit`` of them."""
    return [g for g in rank_for_download(gateways) if _is_up(g)][:limit]


def annotate(
    gateways: Iterable[Gateway],
    results: Iterable[ProbeResult],
    ledger: HealthLedger,
) -> list[Gateway]:
    """Copy run-state from probe results and the ledger onto the gateways."""
    by_url = {r.url: r for r in results}
    annotated: list[Gateway] = []
    for gateway in gateways:
        result = by_url.get(gateway.url)
        record = ledger.get(gateway.url)
        if result is not None:
            gateway.available = result.available
            gateway.latency_ms = result.latency_ms
            gateway.error_type = result.error_type
            gateway.last_checked = result.checked_at
        if record is not None:
            gateway.health_score = record.health_score
            gateway.reliability = record.reliability
        annotated.append(gateway)
    return annotated


class PreferredGateway:
    """The most recently successful gateway, tried first on the next race."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def get(self) -> str | None:
        return self._store.get(PREFERRED_GATEWAY_KEY) or None

    def remember(self, url: str) -> None:
        if self.get() != url:
            logger.debug("Preferred gateway is now %s", url, extra={"gateway_url": url})
            self._store.set(PREFERRED_GATEWAY_KEY, url)

    def forget(self, url: str | None = None) -> None:
        """Drop the preference, or only if it currently points at ``url``."""
        if url is None or self.get() == url:
            self._store.delete(PREFERRED_GATEWAY_KEY)

    def first(self, gateways: Iterable[Gateway]) -> list[Gateway]:
        """Move the preferred gateway, if present, to the front."""
        ordered = list(gateways)
        preferred = self.get()
        if not preferred:
            return ordered
        head = [g for g in ordered if g.url == preferred]
        return head + [g for g in ordered if g.url != preferred]
