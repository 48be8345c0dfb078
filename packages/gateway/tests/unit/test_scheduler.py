"""Unit tests for the verification retry scheduler."""

from __future__ import annotations

import asyncio
import json

import pytest

from cloudchan_gateway.middleware.error_handler import FileRecordNotFoundError
from cloudchan_gateway.models.records import FileRecord, VerifyRetryEntry, VerifyStatus
from cloudchan_gateway.storage.files import KeyValueFileStore
from cloudchan_gateway.storage.kv import VERIFY_RETRY_KEY, MemoryKeyValueStore
from cloudchan_gateway.verify.checker import VerifyOutcome
from cloudchan_gateway.verify.scheduler import (
    INTERRUPTED_MESSAGE,
    VerificationScheduler,
    format_delay,
    shorten,
)

from conftest import FakeClock

CID = "bafyschedcid"
OK = VerifyOutcome(success=True, message="Verified via test")
NETWORK = VerifyOutcome(success=False, message="network error")
MISMATCH = VerifyOutcome(
    success=False, message="Content hash mismatch: expected aaaa..., got bbbb...", permanent=True
)


class FakeVerify:
    """Returns queued outcomes in order, repeating the last one."""

    def __init__(self, *outcomes: VerifyOutcome | Exception) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, str | None]] = []

    async def __call__(self, cid: str, content_hash: str | None) -> VerifyOutcome:
        self.calls.append((cid, content_hash))
        item = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(item, Exception):
            raise item
        return item


class BlockingVerify:
    """Blocks every call until released, then returns ``outcome``."""

    def __init__(self, outcome: VerifyOutcome = OK) -> None:
        self.outcome = outcome
        self.calls: list[tuple[str, str | None]] = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, cid: str, content_hash: str | None) -> VerifyOutcome:
        self.calls.append((cid, content_hash))
        self.started.set()
        await self.release.wait()
        return self.outcome


def _scheduler(
    kv: MemoryKeyValueStore,
    files: KeyValueFileStore,
    clock: FakeClock,
    verify: FakeVerify,
    **kwargs,
) -> tuple[VerificationScheduler, list[str]]:
    propagated: list[str] = []
    kwargs.setdefault("jitter_ms", 800)
    kwargs.setdefault("rand", lambda: 0.0)
    scheduler = VerificationScheduler(
        kv, files, verify=verify, propagate=propagated.append, clock=clock, **kwargs
    )
    return scheduler, propagated


def _record(file_id: str = "f1", **fields) -> FileRecord:
    return FileRecord(id=file_id, cid=CID, name="photo.jpg", **fields)


class TestHelpers:
    def test_shorten(self):
        assert shorten("  a \n  b ") == "a b"
        assert shorten("x" * 200, 10) == "xxxxxxx..."
        assert shorten(None) == ""

    def test_format_delay(self):
        assert format_delay(3000) == "3 seconds"
        assert format_delay(200) == "1 seconds"


class TestBackoff:
    @pytest.mark.parametrize(
        "attempts,expected",
        [(0, 3000), (1, 3000), (2, 6000), (3, 12000), (4, 24000), (6, 96000), (7, 120000), (30, 120000)],
    )
    def test_delay_without_jitter(self, kv, files, clock, attempts: int, expected: int):
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(OK))
        assert scheduler.compute_delay_ms(attempts, jitter=False) == expected

    def test_jitter_is_added(self, kv, files, clock):
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(OK), rand=lambda: 0.5)
        assert scheduler.compute_delay_ms(1) == 3400


class TestEnrollAndRun:
    def test_enroll_marks_pending_and_arms_timer(self, kv, files, clock):
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(OK))
        entry = scheduler.enroll_upload(_record())

        assert entry.attempts_made == 0
        assert entry.max_attempts == 6
        assert entry.next_at == int(clock() * 1000) + 3000
        assert scheduler.has_timer("f1")

        stored = files.get("f1")
        assert stored.verified is False
        assert stored.verify_status is VerifyStatus.PENDING
        assert stored.verify_message == "Queued for automatic retry. Retrying in 3 seconds (1/6)"

        persisted = json.loads(kv.get(VERIFY_RETRY_KEY))
        assert persisted["f1"]["attemptsMade"] == 0
        assert persisted["f1"]["cid"] == CID

    async def test_timer_does_not_fire_early(self, kv, files, clock):
        verify = FakeVerify(OK)
        scheduler, _ = _scheduler(kv, files, clock, verify)
        scheduler.enroll_upload(_record())

        clock.advance(2.9)
        assert await scheduler.fire_due() == []
        assert verify.calls == []

    async def test_success_marks_ok_and_clears(self, kv, files, clock):
        verify = FakeVerify(OK)
        scheduler, propagated = _scheduler(kv, files, clock, verify)
        scheduler.enroll_upload(_record(hash="abc"))

        clock.advance(3)
        assert await scheduler.fire_due() == ["f1"]

        stored = files.get("f1")
        assert stored.verified is True
        assert stored.verify_status is VerifyStatus.OK
        assert scheduler.load_state() == {}
        assert not scheduler.has_timer("f1")
        assert verify.calls == [(CID, "abc")]
        assert propagated == [CID]

    async def test_failure_reschedules_with_backoff(self, kv, files, clock):
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(NETWORK), rand=lambda: 0.99)
        scheduler.enroll_upload(_record())

        clock.advance(4)
        await scheduler.fire_due()

        entry = scheduler.load_state()["f1"]
        now_ms = int(clock() * 1000)
        assert entry.attempts_made == 1
        assert entry.last_error == "network error"
        assert now_ms + 3000 <= entry.next_at <= now_ms + 3800
        stored = files.get("f1")
        assert stored.verify_status is VerifyStatus.PENDING
        assert stored.verify_message.startswith("Queued for automatic retry: network error.")
        assert stored.verify_message.endswith("(2/6)")

    async def test_permanent_failure_stops_retrying(self, kv, files, clock):
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(MISMATCH))
        scheduler.enroll_upload(_record(hash="aaaa"))

        clock.advance(3)
        await scheduler.fire_due()

        stored = files.get("f1")
        assert stored.verified is False
        assert stored.verify_status is VerifyStatus.FAILED
        assert stored.verify_message.startswith("Content hash mismatch")
        assert "f1" not in scheduler.load_state()
        assert not scheduler.has_timer("f1")

    async def test_attempts_are_exhausted(self, kv, files, clock):
        verify = FakeVerify(NETWORK)
        scheduler, _ = _scheduler(kv, files, clock, verify, max_attempts=2)
        scheduler.enroll_upload(_record())

        for _ in range(3):
            clock.advance(200)
            await scheduler.fire_due()

        stored = files.get("f1")
        assert len(verify.calls) == 2
        assert stored.verify_status is VerifyStatus.FAILED
        assert stored.verify_message.startswith("Automatic retries exhausted")
        assert scheduler.load_state() == {}

    async def test_verify_exception_counts_as_failure(self, kv, files, clock):
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(RuntimeError("boom")))
        scheduler.enroll_upload(_record())

        clock.advance(3)
        await scheduler.fire_due()

        entry = scheduler.load_state()["f1"]
        assert entry.attempts_made == 1
        assert entry.last_error == "boom"

    async def test_busy_file_is_rechecked_later(self, kv, files, clock):
        verify = BlockingVerify(OK)
        scheduler, _ = _scheduler(kv, files, clock, verify)
        scheduler.enroll_upload(_record())

        clock.advance(3)
        task = asyncio.create_task(scheduler.fire_due())
        await verify.started.wait()
        assert scheduler.is_verifying("f1")

        scheduler.schedule_retry(files.get("f1"), attempts_made=0)
        clock.advance(3)
        assert await scheduler.fire_due() == ["f1"]

        assert len(verify.calls) == 1
        assert scheduler.has_timer("f1")
        assert scheduler.active_timers()["f1"] <= int(clock() * 1000) + 15000

        verify.release.set()
        await task
        assert files.get("f1").verify_status is VerifyStatus.OK
        assert not scheduler.is_verifying("f1")

    async def test_stale_verifying_status_runs_a_pass(self, kv, files, clock):
        verify = FakeVerify(OK)
        scheduler, _ = _scheduler(kv, files, clock, verify)
        scheduler.enroll_upload(_record())
        record = files.get("f1")
        record.verify_status = VerifyStatus.VERIFYING
        files.upsert(record)

        clock.advance(3)
        await scheduler.fire_due()

        assert len(verify.calls) == 1
        assert files.get("f1").verify_status is VerifyStatus.OK
        assert scheduler.load_state() == {}

    async def test_cancelled_pass_returns_file_to_pending(self, kv, files, clock):
        verify = BlockingVerify(OK)
        scheduler, _ = _scheduler(kv, files, clock, verify)
        scheduler.enroll_upload(_record())

        clock.advance(3)
        task = asyncio.create_task(scheduler.fire_due())
        await verify.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        stored = files.get("f1")
        assert stored.verify_status is VerifyStatus.PENDING
        assert stored.verify_message == INTERRUPTED_MESSAGE
        assert not scheduler.is_verifying("f1")
        assert "f1" in scheduler.load_state()

        restarted, _ = _scheduler(kv, files, clock, FakeVerify(OK))
        assert restarted.resync_timers() == 1
        clock.advance(60)
        assert await restarted.fire_due() == ["f1"]
        assert files.get("f1").verify_status is VerifyStatus.OK
        assert restarted.load_state() == {}

    async def test_stop_interrupts_in_flight_pass(self, kv, files, clock):
        verify = BlockingVerify(OK)
        scheduler, _ = _scheduler(kv, files, clock, verify)
        scheduler.start()
        scheduler.enroll_upload(_record())

        clock.advance(3)
        await asyncio.wait_for(verify.started.wait(), timeout=5)
        await scheduler.stop()

        stored = files.get("f1")
        assert stored.verify_status is VerifyStatus.PENDING
        assert stored.verify_message == INTERRUPTED_MESSAGE
        assert scheduler.get_stats()["in_flight"] == 0


    async def test_already_verified_file_is_cleared(self, kv, files, clock):
        verify = FakeVerify(OK)
        scheduler, _ = _scheduler(kv, files, clock, verify)
        scheduler.enroll_upload(_record())
        record = files.get("f1")
        record.verified = True
        files.upsert(record)

        clock.advance(3)
        await scheduler.fire_due()

        assert verify.calls == []
        assert scheduler.load_state() == {}

    def test_rescheduling_keeps_a_single_timer(self, kv, files, clock):
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(OK))
        record = _record()
        scheduler.enroll_upload(record)
        scheduler.schedule_retry(record, attempts_made=2)
        scheduler.schedule_retry(record, attempts_made=3)

        assert list(scheduler.active_timers()) == ["f1"]
        assert scheduler.active_timers()["f1"] == int(clock() * 1000) + 12000

    def test_disabled_scheduler_does_nothing(self, kv, files, clock):
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(OK), enabled=False)
        assert scheduler.enroll_upload(_record()) is None
        assert not scheduler.has_timer("f1")
        assert scheduler.resync_timers() == 0


class TestResync:
    def _persist(self, kv: MemoryKeyValueStore, entries: dict[str, VerifyRetryEntry]) -> None:
        kv.set(VERIFY_RETRY_KEY, json.dumps({k: v.to_dict() for k, v in entries.items()}))

    def test_rearms_pending_and_drops_verified(self, kv, files, clock):
        now_ms = int(clock() * 1000)
        files.upsert(_record("pending", verified=False, verify_status=VerifyStatus.PENDING))
        files.upsert(_record("done", verified=True, verify_status=VerifyStatus.OK))
        self._persist(
            kv,
            {
                "pending": VerifyRetryEntry(2, 6, now_ms + 5000, CID),
                "done": VerifyRetryEntry(1, 6, now_ms + 5000, CID),
                "ghost": VerifyRetryEntry(1, 6, now_ms + 5000, CID),
            },
        )
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(OK))

        assert scheduler.resync_timers() == 1
        assert scheduler.active_timers() == {"pending": now_ms + 5000}
        assert set(scheduler.load_state()) == {"pending"}

    def test_overdue_entry_fires_immediately(self, kv, files, clock):
        now_ms = int(clock() * 1000)
        files.upsert(_record("late", verified=False, verify_status=VerifyStatus.PENDING))
        self._persist(kv, {"late": VerifyRetryEntry(1, 6, now_ms - 60_000, CID)})
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(OK))

        scheduler.resync_timers()
        assert scheduler.pop_due() == ["late"]

    def test_enrolls_recent_failures_but_not_hash_mismatches(self, kv, files, clock):
        now_ms = int(clock() * 1000)
        files.upsert(
            _record(
                "retryable",
                verified=False,
                verify_status=VerifyStatus.FAILED,
                verify_message="Automatic retries exhausted: timeout",
                uploaded_at=now_ms - 3_600_000,
            )
        )
        files.upsert(
            _record(
                "tampered",
                verified=False,
                verify_status=VerifyStatus.FAILED,
                verify_message="Content hash mismatch: expected a..., got b...",
                uploaded_at=now_ms - 3_600_000,
            )
        )
        files.upsert(
            _record(
                "ancient",
                verified=False,
                verify_status=VerifyStatus.FAILED,
                verify_message="timeout",
                uploaded_at=now_ms - 3 * 86_400_000,
            )
        )
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(OK))

        scheduler.resync_timers()
        assert set(scheduler.active_timers()) == {"retryable"}
        assert files.get("retryable").verify_status is VerifyStatus.PENDING

    def test_enrolls_stuck_verifying_files(self, kv, files, clock):
        now_ms = int(clock() * 1000)
        files.upsert(
            _record("stuck", verified=False, verify_status=VerifyStatus.VERIFYING, uploaded_at=now_ms - 600_000)
        )
        files.upsert(
            _record("busy", verified=False, verify_status=VerifyStatus.VERIFYING, uploaded_at=now_ms - 10_000)
        )
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(OK))

        scheduler.resync_timers()
        assert set(scheduler.active_timers()) == {"stuck"}
        assert "stalled" in scheduler.load_state()["stuck"].last_error

    async def test_resets_verifying_record_left_by_previous_run(self, kv, files, clock):
        previous, _ = _scheduler(kv, files, clock, FakeVerify(OK))
        previous.enroll_upload(_record())
        record = files.get("f1")
        record.verify_status = VerifyStatus.VERIFYING
        files.upsert(record)

        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(OK))
        assert scheduler.resync_timers() == 1

        stored = files.get("f1")
        assert stored.verify_status is VerifyStatus.PENDING
        assert stored.verify_message == INTERRUPTED_MESSAGE

        clock.advance(3)
        assert await scheduler.fire_due() == ["f1"]
        assert files.get("f1").verify_status is VerifyStatus.OK


class TestRetryNow:
    async def test_unknown_file_raises(self, kv, files, clock):
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(OK))
        with pytest.raises(FileRecordNotFoundError):
            await scheduler.retry_now("missing")

    async def test_success_clears_schedule(self, kv, files, clock):
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(OK))
        scheduler.enroll_upload(_record())

        outcome = await scheduler.retry_now("f1")

        assert outcome.success is True
        assert files.get("f1").verify_status is VerifyStatus.OK
        assert scheduler.load_state() == {}
        assert not scheduler.has_timer("f1")

    async def test_failure_reenrolls_at_attempt_one(self, kv, files, clock):
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(NETWORK))
        files.upsert(_record(verified=False, verify_status=VerifyStatus.FAILED))

        await scheduler.retry_now("f1")

        entry = scheduler.load_state()["f1"]
        assert entry.attempts_made == 1
        assert scheduler.has_timer("f1")
        assert files.get("f1").verify_status is VerifyStatus.PENDING

    async def test_permanent_failure_is_final(self, kv, files, clock):
        scheduler, _ = _scheduler(kv, files, clock, FakeVerify(MISMATCH))
        files.upsert(_record(hash="aaaa", verified=False, verify_status=VerifyStatus.PENDING))

        await scheduler.retry_now("f1")

        assert files.get("f1").verify_status is VerifyStatus.FAILED
        assert not scheduler.has_timer("f1")
