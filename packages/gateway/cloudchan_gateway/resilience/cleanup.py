"""Cleanup policy for chronically unhealthy gateways.

A gateway is a candidate when its health record trips any of four rules:
too many failures, too many consecutive failures, too long since the last
success (never succeeding counts as already past the limit), or a health
score below the floor. Gateways at or below the protected priority
threshold are never candidates, and gateways with no health record have not
been judged yet.

Removal never touches the health ledger, so a removed gateway keeps its
history for audit or re-adding.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from cloudchan_gateway.health.ledger import HealthLedger
from cloudchan_gateway.models.gateway import Gateway
from cloudchan_gateway.models.records import HealthRecord
from cloudchan_gateway.registry.catalogue import GatewayRegistry

logger = logging.getLogger(__name__)

_DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class CleanupCandidate:
    gateway: Gateway
    reasons: tuple[str, ...]
    health: HealthRecord

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.gateway.name,
            "url": self.gateway.url,
            "priority": self.gateway.priority,
            "reason": self.reason,
            "health": self.health.to_dict(),
        }


@dataclass
class CleanupReport:
    enabled: bool
    committed: bool
    removed: list[CleanupCandidate] = field(default_factory=list)
    message: str = ""

    @property
    def cleaned(self) -> int:
        return len(self.removed) if self.committed else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "committed": self.committed,
            "cleaned": self.cleaned,
            "candidates": [c.to_dict() for c in self.removed],
            "message": self.message,
        }


class CleanupPolicy:
    """Flags and removes unhealthy, non-protected gateways.

    Parameters
    ----------
    max_failure_count:
        Cumulative failures at which a gateway is flagged.
    max_consecutive_failures:
        Consecutive failures at which a gateway is flagged.
    max_unused_days:
        Days since the last success at which a gateway is flagged.
    min_health_score:
        Scores strictly below this are flagged.
    protected_priority:
        Gateways with ``priority <= protected_priority`` are exempt.
    enabled:
        When False, ``perform_cleanup`` removes nothing.
    clock:
        Wall clock in seconds.
    """

    def __init__(
        self,
        *,
        max_failure_count: int = 10,
        max_consecutive_failures: int = 5,
        max_unused_days: float = 7.0,
        min_health_score: int = 10,
        protected_priority: int = 10,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_failure_count = max_failure_count
        self._max_consecutive = max_consecutive_failures
        self._max_unused_days = max_unused_days
        self._min_health_score = min_health_score
        self._protected_priority = protected_priority
        self._enabled = enabled
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._enabled

    def is_protected(self, gateway: Gateway) -> bool:
        return gateway.priority <= self._protected_priority

    def evaluate(self, gateway: Gateway, health: HealthRecord | None) -> list[str]:
        """Human-readable reasons ``gateway`` should go; empty when it stays."""
        if health is None or self.is_protected(gateway):
            return []

        reasons: list[str] = []
        if health.failure_count >= self._max_failure_count:
            reasons.append(
                f"too many failures ({health.failure_count}/{self._max_failure_count})"
            )
        if health.consecutive_failures >= self._max_consecutive:
            reasons.append(f"{health.consecutive_failures} consecutive failures")

        if health.last_success_time:
            days = (self._clock() * 1000 - health.last_success_time) / _DAY_MS
        else:
            days = self._max_unused_days + 1
        if days >= self._max_unused_days:
            reasons.append(f"no successful access for {round(days)} days")

        if health.health_score is not None and health.health_score < self._min_health_score:
            reasons.append(f"health score too low ({health.health_score})")
        return reasons

    def identify_candidates(
        self,
        gateways: Iterable[Gateway],
        ledger: HealthLedger,
    ) -> list[CleanupCandidate]:
        candidates: list[CleanupCandidate] = []
        for gateway in gateways:
            health = ledger.get(gateway.url)
            reasons = self.evaluate(gateway, health)
            if reasons and health is not None:
                candidates.append(CleanupCandidate(gateway, tuple(reasons), health))
        return candidates

    def perform_cleanup(
        self,
        registry: GatewayRegistry,
        ledger: HealthLedger,
        *,
        commit: bool = True,
    ) -> CleanupReport:
        """Remove flagged gateways from ``registry`` (or only report them)."""
        if not self._enabled:
            return CleanupReport(enabled=False, committed=False, message="Cleanup is disabled")

        candidates = [
            c for c in self.identify_candidates(registry.all(), ledger)
            if not self.is_protected(c.gateway)
        ]
        if not candidates:
            return CleanupReport(
                enabled=True, committed=commit, message="No gateways need cleanup"
            )

        if not commit:
            return CleanupReport(
                enabled=True,
                committed=False,
                removed=candidates,
                message=f"{len(candidates)} gateways would be removed",
            )

        registry.remove_many(c.gateway.url for c in candidates)
        for candidate in candidates:
            logger.info(
                "Cleaned up gateway %s: %s",
                candidate.gateway.url,
                candidate.reason,
                extra={"gateway_url": candidate.gateway.url},
            )
        return CleanupReport(
            enabled=True,
            committed=True,
            removed=candidates,
            message=f"Removed {len(candidates)} unhealthy gateways",
        )
