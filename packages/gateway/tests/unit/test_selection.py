"""Unit tests for ranking, annotation, listing helpers and the preferred gateway."""

from __future__ import annotations

import pytest

from cloudchan_gateway.health.ledger import HealthLedger
from cloudchan_gateway.models.gateway import ErrorType, Region
from cloudchan_gateway.selection.query import filter_gateways, sort_gateways
from cloudchan_gateway.selection.ranker import (
    PreferredGateway,
    annotate,
    rank_for_download,
    rank_for_probe,
    rank_for_warm,
)
from cloudchan_gateway.storage.kv import MemoryKeyValueStore

from conftest import make_gateway, make_result


class TestRanking:
    def test_download_prefers_latency_over_priority(self):
        a = make_gateway("a.example", priority=1, available=True, latency_ms=900)
        b = make_gateway("b.example", priority=2, available=True, latency_ms=300)

        assert [g.name for g in rank_for_download([a, b])] == ["b.example", "a.example"]

    def test_download_puts_unavailable_last_by_priority(self):
        up = make_gateway("up.example", priority=9, available=True, latency_ms=800)
        down_low = make_gateway("d1.example", priority=5, available=False)
        down_high = make_gateway("d2.example", priority=1, available=None)

        ranked = rank_for_download([down_low, up, down_high])
        assert [g.name for g in ranked] == ["up.example", "d2.example", "d1.example"]

    def test_download_ties_break_on_score_then_priority(self):
        a = make_gateway("a.example", priority=3, available=True, latency_ms=200, health_score=80)
        b = make_gateway("b.example", priority=2, available=True, latency_ms=200, health_score=90)
        c = make_gateway("c.example", priority=1, available=True, latency_ms=200, health_score=80)

        assert [g.name for g in rank_for_download([a, b, c])] == [
            "b.example",
            "c.example",
            "a.example",
        ]

    def test_probe_order_uses_priority_then_score(self, ledger: HealthLedger):
        fast = make_gateway("fast.example", priority=5)
        slow = make_gateway("slow.example", priority=5)
        first = make_gateway("first.example", priority=1)
        ledger.apply(fast.url, make_result(fast.url, True, 100))
        ledger.apply(slow.url, make_result(slow.url, False))

        ranked = rank_for_probe([slow, fast, first], ledger)
        assert [g.name for g in ranked] == ["first.example", "fast.example", "slow.example"]

    def test_unprobed_gateway_scores_neutral(self, ledger: HealthLedger):
        dead = make_gateway("dead.example", priority=5)
        fresh = make_gateway("fresh.example", priority=5)
        ledger.apply(dead.url, make_result(dead.url, False))

        assert rank_for_probe([dead, fresh], ledger)[0] is fresh

    def test_warm_takes_fastest_available(self):
        gateways = [
            make_gateway(f"g{i}.example", available=i != 2, latency_ms=100 * (5 - i))
            for i in range(5)
        ]
        warm = rank_for_warm(gateways, limit=2)
        assert [g.name for g in warm] == ["g4.example", "g3.example"]


class TestAnnotate:
    def test_copies_run_state_and_health(self, ledger: HealthLedger):
        gateway = make_gateway("a.example")
        result = make_result(gateway.url, False)
        ledger.apply(gateway.url, result)

        annotate([gateway], [result], ledger)

        assert gateway.available is False
        assert gateway.latency_ms == -1
        assert gateway.error_type is ErrorType.NETWORK
        assert gateway.health_score == 0
        assert gateway.reliability == 0.0

    def test_unknown_gateway_left_untouched(self, ledger: HealthLedger):
        gateway = make_gateway("a.example")
        annotate([gateway], [], ledger)
        assert gateway.available is None
        assert gateway.health_score is None


class TestQueryHelpers:
    @pytest.fixture
    def pool(self):
        return [
            make_gateway("alpha.example", region=Region.CN, available=True, latency_ms=300, health_score=85),
            make_gateway("beta.example", region=Region.INTL, available=False, health_score=0),
            make_gateway("gamma.example", region=Region.INTL, available=True, latency_ms=1200, health_score=70),
        ]

    def test_sort_by_health_score_descends(self, pool):
        assert [g.name for g in sort_gateways(pool, "health_score")] == [
            "alpha.example",
            "gamma.example",
            "beta.example",
        ]

    def test_sort_by_latency_puts_unknown_last(self, pool):
        assert [g.name for g in sort_gateways(pool, "latency")][-1] == "beta.example"

    def test_sort_by_name_descending(self, pool):
        assert sort_gateways(pool, "name", descending=True)[0].name == "gamma.example"

    def test_filters(self, pool):
        assert [g.name for g in filter_gateways(pool, region="intl")] == [
            "beta.example",
            "gamma.example",
        ]
        assert [g.name for g in filter_gateways(pool, available=True, max_latency_ms=500)] == [
            "alpha.example"
        ]
        assert [g.name for g in filter_gateways(pool, min_health_score=75)] == ["alpha.example"]
        assert [g.name for g in filter_gateways(pool, search="GAM")] == ["gamma.example"]


class TestPreferredGateway:
    def test_remember_forget(self, kv: MemoryKeyValueStore):
        preferred = PreferredGateway(kv)
        assert preferred.get() is None

        preferred.remember("https://a.example/ipfs/")
        assert preferred.get() == "https://a.example/ipfs/"

        preferred.forget("https://other.example/ipfs/")
        assert preferred.get() == "https://a.example/ipfs/"

        preferred.forget("https://a.example/ipfs/")
        assert preferred.get() is None

    def test_first_moves_preferred_to_front(self, kv: MemoryKeyValueStore):
        gateways = [make_gateway(h) for h in ("a.example", "b.example", "c.example")]
        preferred = PreferredGateway(kv)
        preferred.remember("https://b.example/ipfs/")

        assert [g.name for g in preferred.first(gateways)] == ["b.example", "a.example", "c.example"]
