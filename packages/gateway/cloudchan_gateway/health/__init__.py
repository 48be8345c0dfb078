"""Health ledger, scoring and the probe result cache."""

from cloudchan_gateway.health.ledger import HealthLedger, health_score, latency_score, region_bonus
from cloudchan_gateway.health.result_cache import CacheLookup, ResultCache

__all__ = [
    "CacheLookup",
    "HealthLedger",
    "ResultCache",
    "health_score",
    "latency_score",
    "region_bonus",
]
