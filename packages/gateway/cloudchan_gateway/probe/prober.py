"""Single-gateway availability and latency probe.

A probe issues a header-only request for the reference object. When the
gateway answers with an ambiguous status (method not allowed and friends) and
range fallback is enabled, it follows up with a one-byte range GET. Either a
2xx or a 206 marks the gateway available.

Transient server statuses and network/timeout errors are retried with a fixed
delay. Every request races against its timeout and against an optional
caller-supplied cancellation event; probes never raise, the outcome is
folded into a ``ProbeResult``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from cloudchan_gateway.models.gateway import ErrorType, Gateway, ProbeResult

logger = logging.getLogger(__name__)

# Upstream/gateway timeout statuses worth another attempt.
TRANSIENT_STATUSES = frozenset({502, 504})
# Statuses that say nothing about the object; the range GET decides.
AMBIGUOUS_STATUSES = frozenset({405, 406, 501})


@dataclass(frozen=True)
class CheckOutcome:
    """Result of one HTTP request made by the prober."""

    status_code: int
    latency_ms: int
    error_type: ErrorType
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def transient(self) -> bool:
        if self.cancelled:
            return False
        if self.error_type in (ErrorType.TIMEOUT, ErrorType.NETWORK):
            return True
        return self.status_code in TRANSIENT_STATUSES


class GatewayProber:
    """Probes gateways through a shared ``httpx.AsyncClient``.

    Parameters
    ----------
    client:
        Shared async HTTP client.
    timeout_ms:
        Timeout of a single request.
    retry_times:
        Extra attempts after a transient failure.
    retry_delay_ms:
        Fixed pause between attempts.
    range_fallback:
        Whether an ambiguous HEAD answer triggers a ``bytes=0-0`` GET.
    clock:
        Wall clock in seconds, used for ``checked_at`` stamps.
    sleep:
        Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        timeout_ms: int = 8000,
        retry_times: int = 2,
        retry_delay_ms: int = 1000,
        range_fallback: bool = True,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._timeout_ms = timeout_ms
        self._retry_times = retry_times
        self._retry_delay_ms = retry_delay_ms
        self._range_fallback = range_fallback
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def probe(
        self,
        gateway: Gateway,
        cid: str,
        *,
        cancel: asyncio.Event | None = None,
        timeout_ms: int | None = None,
    ) -> ProbeResult:
        """Check one gateway for one object, retrying transient failures."""
        url = gateway.object_url(cid)
        attempts = 0
        outcome = CheckOutcome(0, -1, ErrorType.NETWORK)
        method = "head"

        while attempts <= self._retry_times:
            if cancel is not None and cancel.is_set():
                outcome = CheckOutcome(0, -1, ErrorType.NETWORK, cancelled=True)
                break
            attempts += 1

            outcome = await self.head_check(url, cancel=cancel, timeout_ms=timeout_ms)
            method = "head"
            if (
                self._range_fallback
                and not outcome.cancelled
                and outcome.status_code in AMBIGUOUS_STATUSES
            ):
                outcome = await self.range_check(url, cancel=cancel, timeout_ms=timeout_ms)
                method = "range"

            if outcome.ok or not outcome.transient or attempts > self._retry_times:
                break

            logger.debug(
                "Transient probe failure on %s (attempt %d), retrying",
                gateway.url,
                attempts,
                extra={"gateway_url": gateway.url, "attempt": attempts},
            )
            await self._sleep(self._retry_delay_ms / 1000)

        available = outcome.ok
        return ProbeResult(
            url=gateway.url,
            name=gateway.name,
            available=available,
            latency_ms=outcome.latency_ms if available else -1,
            error_type=ErrorType.NONE if available else outcome.error_type,
            status_code=outcome.status_code,
            method=method,
            attempts=attempts,
            cancelled=outcome.cancelled,
            checked_at=int(self._clock() * 1000),
            region=gateway.region,
            priority=gateway.priority,
        )

    async def head_check(
        self,
        url: str,
        *,
        cancel: asyncio.Event | None = None,
        timeout_ms: int | None = None,
    ) -> CheckOutcome:
        return await self.check(url, "HEAD", cancel=cancel, timeout_ms=timeout_ms)

    async def range_check(
        self,
        url: str,
        *,
        cancel: asyncio.Event | None = None,
        timeout_ms: int | None = None,
    ) -> CheckOutcome:
        return await self.check(
            url, "GET", headers={"Range": "bytes=0-0"}, cancel=cancel, timeout_ms=timeout_ms
        )

    async def check(
        self,
        url: str,
        method: str,
        *,
        headers: dict[str, str] | None = None,
        cancel: asyncio.Event | None = None,
        timeout_ms: int | None = None,
    ) -> CheckOutcome:
        """One request, measured to the response headers.

        Races the request against the timeout and ``cancel``. Never raises
        for network failures.
        """
        timeout_s = (timeout_ms or self._timeout_ms) / 1000
        request = self._client.build_request(
            method, url, headers=headers, timeout=timeout_s
        )
        send = asyncio.ensure_future(self._send_headers(request))
        waiters: set[asyncio.Future] = {send}
        cancel_wait: asyncio.Future | None = None
        if cancel is not None:
            cancel_wait = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if send not in done:
            send.cancel()
            try:
                await send
            except (asyncio.CancelledError, Exception):
                pass
            if cancel is not None and cancel.is_set():
                return CheckOutcome(0, -1, ErrorType.NETWORK, cancelled=True)
            return CheckOutcome(0, -1, ErrorType.TIMEOUT)

        try:
            status, latency_ms = send.result()
        except httpx.TimeoutException:
            return CheckOutcome(0, -1, ErrorType.TIMEOUT)
        except httpx.HTTPError as exc:
            logger.debug("Request to %s failed: %s", url, exc, extra={"gateway_url": url})
            return CheckOutcome(0, -1, ErrorType.NETWORK)

        error_type = ErrorType.NONE if 200 <= status < 300 else ErrorType.SERVER
        return CheckOutcome(status, latency_ms, error_type)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _send_headers(self, request: httpx.Request) -> tuple[int, int]:
        started = time.perf_counter()
        response = await self._client.send(request, stream=True)
        latency_ms = round((time.perf_counter() - started) * 1000)
        await response.aclose()
        return response.status_code, latency_ms
