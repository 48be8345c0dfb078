"""Shared test fixtures and hypothesis strategies for the gateway test suite."""

from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest
from hypothesis import strategies as st

from cloudchan_gateway.config.settings import GatewaySettings
from cloudchan_gateway.health.ledger import HealthLedger
from cloudchan_gateway.models.gateway import ErrorType, Gateway, ProbeResult, Region
from cloudchan_gateway.storage.files import KeyValueFileStore
from cloudchan_gateway.storage.kv import MemoryKeyValueStore

T0 = 1_700_000_000.0


# ---------------------------------------------------------------------------
# Deterministic time
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable wall clock (seconds) that only moves when told to."""

    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Awaitable sleep that returns immediately and remembers its delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """AsyncClient whose every request is answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def by_host(statuses: dict[str, int], default: int = 404) -> Callable[[httpx.Request], httpx.Response]:
    """Handler answering each host with a fixed status."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(statuses.get(request.url.host, default))

    return handler


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_gateway(
    host: str,
    *,
    priority: int = 50,
    region: Region = Region.INTL,
    **run_state,
) -> Gateway:
    gateway = Gateway(name=host, url=f"https://{host}/ipfs/", region=region, priority=priority)
    for key, value in run_state.items():
        setattr(gateway, key, value)
    return gateway


def make_result(
    url: str,
    available: bool,
    latency_ms: int = 100,
    *,
    region: Region = Region.INTL,
) -> ProbeResult:
    return ProbeResult(
        url=url,
        name=url,
        available=available,
        latency_ms=latency_ms if available else -1,
        error_type=ErrorType.NONE if available else ErrorType.NETWORK,
        status_code=200 if available else 0,
        region=region,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> GatewaySettings:
    """Test settings with fast timeouts and an isolated state directory."""
    return GatewaySettings(
        state_dir=str(tmp_path / "state"),
        probe_timeout_ms=1000,
        probe_retry_times=1,
        probe_retry_delay_ms=0,
        race_retry_delay_ms=0,
        verify_jitter_ms=0,
        public_gateway_sources=["https://lists.example/gateways.json"],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def files(kv: MemoryKeyValueStore) -> KeyValueFileStore:
    return KeyValueFileStore(kv)


@pytest.fixture
def ledger(kv: MemoryKeyValueStore, clock: FakeClock) -> HealthLedger:
    return HealthLedger(kv, clock=clock)


# ---------------------------------------------------------------------------
# Hypothesis strategies (reusable across property tests)
# ---------------------------------------------------------------------------

hosts = st.from_regex(r"[a-z]{3,10}\.(io|com|net|link)", fullmatch=True)

regions = st.sampled_from(list(Region))

priorities = st.integers(min_value=0, max_value=100)

latencies = st.integers(min_value=0, max_value=20_000)

# (available, latency_ms) pairs for a single gateway's probe history
probe_outcomes = st.lists(
    st.tuples(st.booleans(), latencies),
    min_size=1,
    max_size=30,
)

attempt_counts = st.integers(min_value=0, max_value=40)
