"""Unit tests for the cleanup policy."""

from __future__ import annotations

from cloudchan_gateway.config.gateways import GatewayDescriptor
from cloudchan_gateway.health.ledger import HealthLedger
from cloudchan_gateway.registry.catalogue import GatewayRegistry
from cloudchan_gateway.resilience.cleanup import CleanupPolicy
from cloudchan_gateway.storage.kv import MemoryKeyValueStore

from conftest import FakeClock, make_gateway, make_result

DAY = 24 * 3600


def _registry(kv: MemoryKeyValueStore) -> GatewayRegistry:
    registry = GatewayRegistry(
        kv,
        [
            GatewayDescriptor(name="Core", url="https://core.example/ipfs/", priority=1),
            GatewayDescriptor(name="Flaky", url="https://flaky.example/ipfs/", priority=50),
            GatewayDescriptor(name="Fine", url="https://fine.example/ipfs/", priority=50),
            GatewayDescriptor(name="Unseen", url="https://unseen.example/ipfs/", priority=50),
        ],
        version="t",
    )
    registry.load()
    return registry


def _fail(ledger: HealthLedger, url: str, times: int) -> None:
    for _ in range(times):
        ledger.apply(url, make_result(url, False))


class TestCleanupPolicy:
    def test_consecutive_failures_flag_gateway(self, ledger: HealthLedger, clock: FakeClock):
        policy = CleanupPolicy(clock=clock)
        gateway = make_gateway("flaky.example")
        _fail(ledger, gateway.url, 5)

        reasons = policy.evaluate(gateway, ledger.get(gateway.url))
        assert any("consecutive" in r for r in reasons)

    def test_healthy_gateway_not_flagged(self, ledger: HealthLedger, clock: FakeClock):
        policy = CleanupPolicy(clock=clock)
        gateway = make_gateway("fine.example")
        ledger.apply(gateway.url, make_result(gateway.url, True, 200))

        assert policy.evaluate(gateway, ledger.get(gateway.url)) == []

    def test_stale_success_flags_gateway(self, ledger: HealthLedger, clock: FakeClock):
        policy = CleanupPolicy(max_unused_days=7, clock=clock)
        gateway = make_gateway("stale.example")
        ledger.apply(gateway.url, make_result(gateway.url, True, 200))

        clock.advance(8 * DAY)
        reasons = policy.evaluate(gateway, ledger.get(gateway.url))
        assert reasons == ["no successful access for 8 days"]

    def test_never_succeeded_counts_as_unused(self, ledger: HealthLedger, clock: FakeClock):
        policy = CleanupPolicy(clock=clock)
        gateway = make_gateway("new.example")
        _fail(ledger, gateway.url, 1)

        reasons = policy.evaluate(gateway, ledger.get(gateway.url))
        assert any("no successful access" in r for r in reasons)
        assert any("health score too low" in r for r in reasons)

    def test_protected_and_unprobed_are_exempt(self, ledger: HealthLedger, clock: FakeClock):
        policy = CleanupPolicy(protected_priority=10, clock=clock)
        core = make_gateway("core.example", priority=10)
        _fail(ledger, core.url, 20)

        assert policy.evaluate(core, ledger.get(core.url)) == []
        assert policy.evaluate(make_gateway("unseen.example"), None) == []

    def test_report_does_not_remove(self, kv: MemoryKeyValueStore, ledger: HealthLedger, clock: FakeClock):
        registry = _registry(kv)
        _fail(ledger, "https://flaky.example/ipfs/", 6)
        _fail(ledger, "https://core.example/ipfs/", 6)
        ledger.apply("https://fine.example/ipfs/", make_result("https://fine.example/ipfs/", True, 100))

        report = CleanupPolicy(clock=clock).perform_cleanup(registry, ledger, commit=False)

        assert report.committed is False
        assert report.cleaned == 0
        assert [c.gateway.name for c in report.removed] == ["Flaky"]
        assert len(registry) == 4

    def test_commit_removes_but_keeps_history(self, kv: MemoryKeyValueStore, ledger: HealthLedger, clock: FakeClock):
        registry = _registry(kv)
        _fail(ledger, "https://flaky.example/ipfs/", 6)

        report = CleanupPolicy(clock=clock).perform_cleanup(registry, ledger)

        assert report.cleaned == 1
        assert "https://flaky.example/ipfs/" not in registry
        assert ledger.get("https://flaky.example/ipfs/").failure_count == 6
        assert report.to_dict()["candidates"][0]["url"] == "https://flaky.example/ipfs/"

    def test_disabled_policy_removes_nothing(self, kv: MemoryKeyValueStore, ledger: HealthLedger, clock: FakeClock):
        registry = _registry(kv)
        _fail(ledger, "https://flaky.example/ipfs/", 6)

        report = CleanupPolicy(enabled=False, clock=clock).perform_cleanup(registry, ledger)

        assert report.enabled is False
        assert report.cleaned == 0
        assert len(registry) == 4
