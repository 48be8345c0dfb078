"""Sorting and filtering helpers for gateway listings."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Literal

from cloudchan_gateway.models.gateway import Gateway

SortField = Literal["name", "latency", "health_score", "reliability", "last_checked", "priority"]

_UNKNOWN_LATENCY = float("inf")


def _sort_key(field: SortField):
    if field == "name":
        return lambda g: g.name.lower()
    if field == "latency":
        return lambda g: g.latency_ms if g.latency_ms >= 0 else _UNKNOWN_LATENCY
    if field == "health_score":
        return lambda g: g.health_score or 0
    if field == "reliability":
        return lambda g: g.reliability or 0.0
    if field == "last_checked":
        return lambda g: g.last_checked
    if field == "priority":
        return lambda g: g.priority
    raise ValueError(f"Unknown sort field: {field}")


def sort_gateways(
    gateways: Iterable[Gateway],
    field: SortField = "health_score",
    descending: bool | None = None,
) -> list[Gateway]:
    """Stable sort by ``field``.

    Scores, reliability and recency default to descending; name, latency and
    priority default to ascending.
    """
    if descending is None:
        descending = field in ("health_score", "reliability", "last_checked")
    return sorted(gateways, key=_sort_key(field), reverse=descending)


def filter_gateways(
    gateways: Iterable[Gateway],
    *,
    region: str | None = None,
    available: bool | None = None,
    min_health_score: int | None = None,
    max_latency_ms: int | None = None,
    search: str | None = None,
) -> list[Gateway]:
    query = search.lower() if search else None
    selected: list[Gateway] = []
    for gateway in gateways:
        if region and gateway.region.value != region.upper():
            continue
        if available is not None and bool(gateway.available) is not available:
            continue
        if min_health_score is not None and (gateway.health_score or 0) < min_health_score:
            continue
        if max_latency_ms is not None and (
            gateway.latency_ms < 0 or gateway.latency_ms > max_latency_ms
        ):
            continue
        if query and query not in gateway.name.lower() and query not in gateway.url.lower():
            continue
        selected.append(gateway)
    return selected
