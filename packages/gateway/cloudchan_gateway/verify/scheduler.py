"""Upload verification retry scheduler.

Per file id the state machine is ``pending -> verifying -> ok | pending
(retry) | failed``. Retry timing uses exponential backoff with jitter; the
retry map is persisted so schedules survive restarts and is always re-read
immediately before it is modified.

Timers are owned by a single supervisor task: a heap of ``(due, seq,
file_id, token)`` entries plus one active token per file id. Arming a timer
replaces the file's token, so stale heap entries are skipped and at most one
timer per file id is ever live. A pass cancelled mid-flight puts the file
back to ``pending``, and a ``verifying`` status with no live pass behind it is
treated as stale on resync.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import logging
import math
import random
import re
import time
from collections import Counter
from collections.abc import Awaitable, Callable

from cloudchan_gateway.middleware.error_handler import FileRecordNotFoundError
from cloudchan_gateway.models.records import (
    FilePatch,
    FileRecord,
    VerifyRetryEntry,
    VerifyStatus,
)
from cloudchan_gateway.storage.files import FileStore
from cloudchan_gateway.storage.kv import VERIFY_RETRY_KEY, KeyValueStore
from cloudchan_gateway.verify.checker import VerifyOutcome

logger = logging.getLogger(__name__)

PERMANENT_SIGNATURE = "Content hash mismatch"
INTERRUPTED_MESSAGE = "Verification interrupted, waiting to retry"

VerifyFn = Callable[[str, "str | None"], Awaitable[VerifyOutcome]]
PropagateFn = Callable[[str], None]


def shorten(message: str | None, max_len: int = 160) -> str:
    text = re.sub(r"\s+", " ", str(message or "")).strip()
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def format_delay(delay_ms: int) -> str:
    return f"{max(1, round(delay_ms / 1000))} seconds"


class VerificationScheduler:
    """Re-checks uploaded files until they verify, fail permanently or run out.

    Parameters
    ----------
    store:
        Persistence backend for the retry map.
    files:
        File-record collaborator read for status and patched with results.
    verify:
        ``verify(cid, hash)`` coroutine performing one availability check.
    propagate:
        Fire-and-forget warming trigger, called before each pass.
    enabled:
        When False nothing is scheduled.
    max_attempts, base_delay_ms, max_delay_ms, jitter_ms:
        Backoff parameters.
    busy_delay_cap_ms:
        Upper bound of the re-check delay while another pass is in flight.
    failed_window_ms:
        ``failed`` files uploaded within this window are re-enrolled on resync.
    stuck_window_ms:
        ``verifying`` files older than this are re-enrolled on resync.
    clock:
        Wall clock in seconds.
    rand:
        Uniform ``[0, 1)`` source for jitter.
    """

    def __init__(
        self,
        store: KeyValueStore,
        files: FileStore,
        *,
        verify: VerifyFn,
        propagate: PropagateFn | None = None,
        enabled: bool = True,
        max_attempts: int = 6,
        base_delay_ms: int = 3000,
        max_delay_ms: int = 120000,
        jitter_ms: int = 800,
        busy_delay_cap_ms: int = 15000,
        failed_window_ms: int = 24 * 60 * 60 * 1000,
        stuck_window_ms: int = 3 * 60 * 1000,
        clock: Callable[[], float] = time.time,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._store = store
        self._files = files
        self._verify = verify
        self._propagate = propagate
        self._enabled = enabled
        self._max_attempts = max_attempts
        self._base_delay_ms = base_delay_ms
        self._max_delay_ms = max_delay_ms
        self._jitter_ms = jitter_ms
        self._busy_delay_cap_ms = busy_delay_cap_ms
        self._failed_window_ms = failed_window_ms
        self._stuck_window_ms = stuck_window_ms
        self._clock = clock
        self._rand = rand

        self._heap: list[tuple[int, int, str, int]] = []
        self._timers: dict[str, int] = {}
        self._seq = itertools.count()
        self._wake = asyncio.Event()
        self._supervisor: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[None]] = set()
        self._active: Counter[str] = Counter()
        self._passes = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def enabled(self) -> bool:
        return self._enabled

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def compute_delay_ms(self, attempts_made: int, *, jitter: bool = True) -> int:
        """``clamp(base * 2^(attempts_made-1), base, max)`` plus jitter."""
        exponent = max(0, attempts_made - 1)
        raw = self._base_delay_ms * (2 ** min(exponent, 32))
        capped = min(self._max_delay_ms, max(self._base_delay_ms, raw))
        if jitter and self._jitter_ms > 0:
            capped += math.floor(self._rand() * self._jitter_ms)
        return capped

    # ------------------------------------------------------------------
    # Persisted retry map
    # ------------------------------------------------------------------

    def load_state(self) -> dict[str, VerifyRetryEntry]:
        raw = self._store.get(VERIFY_RETRY_KEY)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Verify retry state is unparsable, treating as empty")
            return {}
        if not isinstance(data, dict):
            return {}

        state: dict[str, VerifyRetryEntry] = {}
        for file_id, item in data.items():
            try:
                state[str(file_id)] = VerifyRetryEntry.from_dict(item)
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning("Dropping malformed retry entry for %s", file_id)
        return state

    def _save_state(self, state: dict[str, VerifyRetryEntry]) -> None:
        payload = {file_id: entry.to_dict() for file_id, entry in state.items()}
        self._store.set(VERIFY_RETRY_KEY, json.dumps(payload, ensure_ascii=False))

    def _drop_entry(self, file_id: str) -> None:
        state = self.load_state()
        if state.pop(file_id, None) is not None:
            self._save_state(state)

    def _clear(self, file_id: str) -> None:
        self._drop_entry(file_id)
        self.cancel(file_id)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm(self, file_id: str, delay_ms: int) -> None:
        """Replace any timer for ``file_id`` with one due in ``delay_ms``."""
        token = next(self._seq)
        self._timers[file_id] = token
        heapq.heappush(self._heap, (self._now_ms() + max(0, delay_ms), token, file_id, token))
        self._wake.set()

    def cancel(self, file_id: str) -> None:
        self._timers.pop(file_id, None)

    def has_timer(self, file_id: str) -> bool:
        return file_id in self._timers

    def active_timers(self) -> dict[str, int]:
        """Due time (ms) of every live timer, keyed by file id."""
        due: dict[str, int] = {}
        for when, _, file_id, token in self._heap:
            if self._timers.get(file_id) == token:
                due[file_id] = when
        return due

    def pop_due(self) -> list[str]:
        """Remove and return file ids whose live timer is due."""
        now = self._now_ms()
        fired: list[str] = []
        while self._heap and self._heap[0][0] <= now:
            _, _, file_id, token = heapq.heappop(self._heap)
            if self._timers.get(file_id) != token:
                continue
            del self._timers[file_id]
            fired.append(file_id)
        return fired

    async def fire_due(self) -> list[str]:
        """Run every due retry to completion; returns the fired ids."""
        fired = self.pop_due()
        for file_id in fired:
            await self.run_scheduled_retry(file_id)
        return fired

    def _next_delay_s(self) -> float | None:
        while self._heap and self._timers.get(self._heap[0][2]) != self._heap[0][3]:
            heapq.heappop(self._heap)
        if not self._heap:
            return None
        return max(0.0, (self._heap[0][0] - self._now_ms()) / 1000)

    async def _supervise(self) -> None:
        while True:
            self._wake.clear()
            for file_id in self.pop_due():
                task = asyncio.create_task(
                    self.run_scheduled_retry(file_id), name=f"verify-retry-{file_id}"
                )
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)

            delay = self._next_delay_s()
            try:
                if delay is None:
                    await self._wake.wait()
                else:
                    await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._supervisor is None or self._supervisor.done():
            self._supervisor = asyncio.create_task(self._supervise(), name="verify-retry-supervisor")
            logger.info("Verification retry supervisor started")

    async def stop(self) -> None:
        tasks = [t for t in [self._supervisor, *self._in_flight] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._supervisor = None
        self._in_flight.clear()
        logger.info("Verification retry supervisor stopped")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _patch(self, file_id: str, verified: bool, status: VerifyStatus, message: str) -> None:
        self._files.apply_patch(file_id, FilePatch(verified, status, message))

    def schedule_retry(
        self,
        record: FileRecord,
        *,
        attempts_made: int | None = None,
        max_attempts: int | None = None,
        last_error: str | None = None,
    ) -> VerifyRetryEntry | None:
        """Persist a retry entry for ``record`` and arm its timer.

        Returns ``None`` without side effects when retries are disabled, the
        record lacks an id or cid, or the attempts are already exhausted.
        """
        if not self._enabled or not record.id or not record.cid:
            return None

        state = self.load_state()
        prev = state.get(record.id)
        attempts = max(0, attempts_made if attempts_made is not None else (prev.attempts_made if prev else 0))
        limit = max(1, max_attempts or (prev.max_attempts if prev else self._max_attempts))
        if attempts >= limit:
            return None

        delay_ms = self.compute_delay_ms(attempts)
        error = shorten(last_error, 500) if last_error else (prev.last_error if prev else None)
        entry = VerifyRetryEntry(
            attempts_made=attempts,
            max_attempts=limit,
            next_at=self._now_ms() + delay_ms,
            cid=record.cid,
            hash=record.hash or (prev.hash if prev else None),
            last_error=error,
        )
        state[record.id] = entry
        self._save_state(state)

        short = shorten(error, 140)
        prefix = f"Queued for automatic retry: {short}. " if short else "Queued for automatic retry. "
        self._patch(
            record.id,
            False,
            VerifyStatus.PENDING,
            f"{prefix}Retrying in {format_delay(delay_ms)} ({attempts + 1}/{limit})",
        )

        self.cancel(record.id)
        self._arm(record.id, delay_ms)
        logger.info(
            "Scheduled verification retry in %d ms",
            delay_ms,
            extra={"file_id": record.id, "cid": record.cid, "attempt": attempts + 1},
        )
        return entry

    def _trigger_propagation(self, cid: str) -> None:
        if self._propagate is None:
            return
        try:
            self._propagate(cid)
        except Exception as exc:
            logger.warning("Propagation trigger failed: %s", exc, extra={"cid": cid})

    def is_verifying(self, file_id: str) -> bool:
        """Whether a pass started by this scheduler is running for ``file_id``."""
        return self._active[file_id] > 0

    async def _run_pass(self, file_id: str, cid: str, content_hash: str | None) -> VerifyOutcome:
        self._passes += 1
        self._active[file_id] += 1
        self._trigger_propagation(cid)
        try:
            return await self._verify(cid, content_hash)
        except asyncio.CancelledError:
            # An interrupted pass must not leave the file stuck in verifying.
            self._patch(file_id, False, VerifyStatus.PENDING, INTERRUPTED_MESSAGE)
            raise
        except Exception as exc:
            logger.warning("Verification pass raised: %s", exc, extra={"cid": cid})
            return VerifyOutcome(success=False, message=str(exc) or type(exc).__name__)
        finally:
            self._active[file_id] -= 1
            if self._active[file_id] <= 0:
                del self._active[file_id]

    async def run_scheduled_retry(self, file_id: str) -> None:
        """Execute one due retry for ``file_id``. Never raises."""
        if not self._enabled:
            return

        entry = self.load_state().get(file_id)
        if entry is None:
            return

        current = self._files.get(file_id)
        if current is None or current.verified is True or current.verify_status is VerifyStatus.OK:
            self._clear(file_id)
            return

        if self.is_verifying(file_id):
            delay_ms = min(
                self._busy_delay_cap_ms,
                self.compute_delay_ms(max(1, entry.attempts_made + 1)),
            )
            self._arm(file_id, delay_ms)
            return

        if entry.attempts_made >= entry.max_attempts:
            self._clear(file_id)
            return

        next_attempt = entry.attempts_made + 1
        self._patch(
            file_id,
            False,
            VerifyStatus.VERIFYING,
            f"Automatic re-check in progress ({next_attempt}/{entry.max_attempts})",
        )

        outcome = await self._run_pass(file_id, entry.cid, current.hash or entry.hash)
        if outcome.success:
            self._patch(file_id, True, VerifyStatus.OK, outcome.message or "Verified")
            self._clear(file_id)
            logger.info("File verified", extra={"file_id": file_id, "cid": entry.cid, "attempt": next_attempt})
            return

        error = outcome.message or "Verification failed"
        state = self.load_state()
        latest = state.get(file_id, entry)
        latest.attempts_made = next_attempt
        latest.last_error = shorten(error, 500)
        state[file_id] = latest
        self._save_state(state)

        if outcome.permanent or next_attempt >= entry.max_attempts:
            message = error if outcome.permanent else f"Automatic retries exhausted: {shorten(error, 180)}"
            self._patch(file_id, False, VerifyStatus.FAILED, message)
            self._clear(file_id)
            logger.warning(
                "Verification gave up: %s",
                shorten(error, 180),
                extra={"file_id": file_id, "cid": entry.cid, "attempt": next_attempt},
            )
            return

        self.schedule_retry(
            current,
            attempts_made=next_attempt,
            max_attempts=entry.max_attempts,
            last_error=error,
        )

    # ------------------------------------------------------------------
    # Restart and manual entry points
    # ------------------------------------------------------------------

    def resync_timers(self) -> int:
        """Re-arm persisted entries and enroll files that need another cycle.

        Returns the number of armed timers afterwards.
        """
        if not self._enabled:
            return 0

        now = self._now_ms()
        state = self.load_state()
        files = {record.id: record for record in self._files.list_records()}
        changed = False

        for file_id, entry in list(state.items()):
            record = files.get(file_id)
            if (
                record is None
                or record.verified is None
                or record.verified is True
                or record.verify_status is VerifyStatus.OK
            ):
                del state[file_id]
                self.cancel(file_id)
                changed = True
                continue
            if record.verify_status is VerifyStatus.VERIFYING and not self.is_verifying(file_id):
                self._patch(file_id, False, VerifyStatus.PENDING, INTERRUPTED_MESSAGE)
            self._arm(file_id, max(0, entry.next_at - now))

        if changed:
            self._save_state(state)

        for record in files.values():
            if record.id in state or record.verified is not False:
                continue
            age_ms = now - record.uploaded_at if record.uploaded_at else None
            if record.verify_status is VerifyStatus.VERIFYING:
                if age_ms is not None and age_ms >= self._stuck_window_ms:
                    self.schedule_retry(
                        record, attempts_made=0, last_error="Verification stalled, retrying"
                    )
                continue
            if record.verify_status is VerifyStatus.FAILED:
                if age_ms is None or age_ms > self._failed_window_ms:
                    continue
                if record.verify_message.startswith(PERMANENT_SIGNATURE):
                    continue
            elif record.verify_status is not VerifyStatus.PENDING:
                continue
            self.schedule_retry(record, attempts_made=0, last_error=record.verify_message)

        return len(self._timers)

    async def retry_now(self, file_id: str) -> VerifyOutcome:
        """Manual verification pass, outside the backoff schedule.

        Raises
        ------
        FileRecordNotFoundError
            If ``file_id`` is unknown.
        """
        record = self._files.get(file_id)
        if record is None or not record.cid:
            raise FileRecordNotFoundError(file_id=file_id)

        self._clear(file_id)
        self._patch(file_id, False, VerifyStatus.VERIFYING, "Manual verification in progress")

        outcome = await self._run_pass(file_id, record.cid, record.hash)
        if outcome.success:
            self._patch(file_id, True, VerifyStatus.OK, outcome.message or "Verified")
        elif outcome.permanent:
            self._patch(file_id, False, VerifyStatus.FAILED, outcome.message)
        else:
            self.schedule_retry(record, attempts_made=1, last_error=outcome.message)
        return outcome

    def enroll_upload(self, record: FileRecord) -> VerifyRetryEntry | None:
        """Reset a (re-)uploaded file to pending and start a fresh cycle."""
        self.cancel(record.id)
        self._drop_entry(record.id)
        record.verified = False
        record.verify_status = VerifyStatus.PENDING
        record.verify_message = "Waiting for gateways to pick up the upload"
        if not record.uploaded_at:
            record.uploaded_at = self._now_ms()
        self._files.upsert(record)
        return self.schedule_retry(record, attempts_made=0)

    def get_stats(self) -> dict:
        return {
            "enabled": self._enabled,
            "armed_timers": len(self._timers),
            "persisted_entries": len(self.load_state()),
            "in_flight": len(self._in_flight),
            "passes": self._passes,
        }
