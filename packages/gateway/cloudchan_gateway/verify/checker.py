"""Availability verification for uploaded objects.

Fast mode asks several gateways at once whether they can serve the object:
a HEAD race, then a one-byte range race, repeated a few times with rotating
gateway picks. Hash mode downloads the object and compares its SHA-256 with
the hash recorded at upload; a mismatch is permanent and never retried.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

import httpx

from cloudchan_gateway.middleware.error_handler import PermanentVerificationError
from cloudchan_gateway.models.gateway import Gateway
from cloudchan_gateway.probe.orchestrator import first_success
from cloudchan_gateway.probe.prober import CheckOutcome, GatewayProber
from cloudchan_gateway.selection.ranker import PreferredGateway

logger = logging.getLogger(__name__)

FALLBACK_GATEWAY = Gateway(name="IPFS.io", url="https://ipfs.io/ipfs/")


@dataclass(frozen=True)
class VerifyOutcome:
    success: bool
    message: str
    permanent: bool = False
    gateway_url: str | None = None


def rotate(items: Sequence[Gateway], offset: int, count: int) -> list[Gateway]:
    """``count`` items starting at ``offset``, wrapping around."""
    if not items:
        return []
    count = min(count, len(items))
    return [items[(offset + i) % len(items)] for i in range(count)]


class AvailabilityVerifier:
    """Confirms that at least one gateway can serve a CID.

    Parameters
    ----------
    client:
        Shared async HTTP client, used for full downloads in hash mode.
    prober:
        Issues the HEAD and range checks.
    preferred:
        Sticky preferred gateway, tried first and updated on success.
    method:
        ``"fast"`` or ``"hash"``.
    max_retries:
        Rounds of racing (fast) or download attempts (hash).
    parallel_gateways:
        Width of the HEAD race.
    range_parallel:
        Width of the range race.
    range_fallback:
        Whether to run the range race after a failed HEAD race.
    head_timeout_ms:
        Timeout of each HEAD/range check.
    full_timeout_ms:
        Timeout of a full download in hash mode.
    round_delay_ms:
        Pause between fast-mode rounds.
    sleep:
        Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        prober: GatewayProber,
        preferred: PreferredGateway,
        *,
        method: str = "fast",
        max_retries: int = 2,
        parallel_gateways: int = 3,
        range_parallel: int = 2,
        range_fallback: bool = True,
        head_timeout_ms: int = 8000,
        full_timeout_ms: int = 60000,
        round_delay_ms: int = 600,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._prober = prober
        self._preferred = preferred
        self._method = method
        self._max_retries = max(1, max_retries)
        self._parallel = parallel_gateways
        self._range_parallel = range_parallel
        self._range_fallback = range_fallback
        self._head_timeout_ms = head_timeout_ms
        self._full_timeout_s = full_timeout_ms / 1000
        self._round_delay_s = round_delay_ms / 1000
        self._sleep = sleep

    def _candidates(self, gateways: Sequence[Gateway]) -> list[Gateway]:
        seen: set[str] = set()
        unique: list[Gateway] = []
        for gateway in [*gateways, FALLBACK_GATEWAY]:
            if "/ipfs/" in gateway.url and gateway.url not in seen:
                seen.add(gateway.url)
                unique.append(gateway)
        return self._preferred.first(unique)

    async def verify(
        self,
        cid: str,
        gateways: Sequence[Gateway],
        *,
        expected_hash: str | None = None,
    ) -> VerifyOutcome:
        if self._method == "hash" and expected_hash:
            return await self.verify_hash(cid, expected_hash, gateways)
        return await self.verify_fast(cid, gateways)

    # ------------------------------------------------------------------
    # Fast mode
    # ------------------------------------------------------------------

    async def _race(
        self,
        picks: list[Gateway],
        cid: str,
        check: Callable[..., Awaitable[CheckOutcome]],
        errors: list[str],
    ) -> Gateway | None:
        def attempt(gateway: Gateway):
            async def run(cancel: asyncio.Event) -> tuple[Gateway, CheckOutcome]:
                outcome = await check(
                    gateway.object_url(cid), cancel=cancel, timeout_ms=self._head_timeout_ms
                )
                return gateway, outcome

            return run

        winner, settled = await first_success(
            [attempt(g) for g in picks], lambda pair: pair[1].ok
        )
        for gateway, outcome in settled:
            if not outcome.ok and not outcome.cancelled:
                detail = (
                    f"HTTP {outcome.status_code}" if outcome.status_code else outcome.error_type.value
                )
                errors.append(f"{gateway.name}: {detail}")
        return winner[0] if winner is not None else None

    async def verify_fast(self, cid: str, gateways: Sequence[Gateway]) -> VerifyOutcome:
        ordered = self._candidates(gateways)
        errors: list[str] = []

        for attempt in range(1, self._max_retries + 1):
            offset = (attempt - 1) * self._parallel
            winner = await self._race(
                rotate(ordered, offset, self._parallel), cid, self._prober.head_check, errors
            )
            if winner is None and self._range_fallback:
                winner = await self._race(
                    rotate(ordered, offset, self._range_parallel),
                    cid,
                    self._prober.range_check,
                    errors,
                )
            if winner is not None:
                self._preferred.remember(winner.url)
                return VerifyOutcome(
                    success=True,
                    message=f"Object reachable via {winner.name} (attempt {attempt}/{self._max_retries})",
                    gateway_url=winner.url,
                )
            if attempt < self._max_retries:
                await self._sleep(self._round_delay_s)

        summary = "; ".join(errors[-8:]) or "no gateway answered"
        return VerifyOutcome(
            success=False,
            message=f"Verification failed after {self._max_retries} attempts: {summary}",
        )

    # ------------------------------------------------------------------
    # Hash mode
    # ------------------------------------------------------------------

    async def _download_and_hash(self, url: str, expected_hash: str) -> str:
        digest = hashlib.sha256()
        async with self._client.stream("GET", url, timeout=self._full_timeout_s) as response:
            response.raise_for_status()
            async for chunk in response.aiter_bytes():
                digest.update(chunk)
        actual = digest.hexdigest()
        if actual.lower() != expected_hash.lower():
            raise PermanentVerificationError(
                f"Content hash mismatch: expected {expected_hash[:16]}..., got {actual[:16]}...",
                expected=expected_hash,
                actual=actual,
            )
        return actual

    async def verify_hash(
        self,
        cid: str,
        expected_hash: str,
        gateways: Sequence[Gateway],
    ) -> VerifyOutcome:
        ordered = self._candidates(gateways)
        last_error = "no gateway answered"
        for attempt in range(1, self._max_retries + 1):
            gateway = ordered[(attempt - 1) % len(ordered)]
            try:
                await asyncio.wait_for(
                    self._download_and_hash(gateway.object_url(cid), expected_hash),
                    timeout=self._full_timeout_s,
                )
            except PermanentVerificationError as exc:
                logger.warning(exc.message, extra={"cid": cid, "gateway_url": gateway.url})
                return VerifyOutcome(
                    success=False, message=exc.message, permanent=True, gateway_url=gateway.url
                )
            except (httpx.HTTPError, asyncio.TimeoutError) as exc:
                last_error = f"{gateway.name}: {str(exc) or type(exc).__name__}"
                if attempt < self._max_retries:
                    await self._sleep(2.0)
                continue
            self._preferred.remember(gateway.url)
            return VerifyOutcome(
                success=True,
                message=f"Hash verified via {gateway.name} (attempt {attempt}/{self._max_retries})",
                gateway_url=gateway.url,
            )
        return VerifyOutcome(
            success=False,
            message=f"Verification failed after {self._max_retries} attempts: {last_error}",
        )
