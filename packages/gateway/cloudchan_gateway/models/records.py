"""Persisted state models: health records, probe runs, retry entries, file records.

Every model serialises to the camelCase JSON layout used by the persisted
blobs and tolerates missing keys when reading them back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from cloudchan_gateway.models.gateway import ProbeResult


@dataclass
class HealthRecord:
    """Cumulative per-gateway counters, independent of any single probe run."""

    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    last_success_time: int = 0
    last_failure_time: int = 0
    last_check_time: int = 0
    health_score: int | None = None
    latency: int = -1
    recent: list[bool] = field(default_factory=list)

    @property
    def reliability(self) -> float:
        """Percentage of recent samples that succeeded."""
        if not self.recent:
            return 0.0
        return round(100.0 * sum(1 for ok in self.recent if ok) / len(self.recent), 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "consecutiveFailures": self.consecutive_failures,
            "lastSuccessTime": self.last_success_time,
            "lastFailureTime": self.last_failure_time,
            "lastCheckTime": self.last_check_time,
            "healthScore": self.health_score,
            "latency": self.latency,
            "recent": [1 if ok else 0 for ok in self.recent],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthRecord:
        score = data.get("healthScore")
        return cls(
            success_count=int(data.get("successCount") or 0),
            failure_count=int(data.get("failureCount") or 0),
            consecutive_failures=int(data.get("consecutiveFailures") or 0),
            last_success_time=int(data.get("lastSuccessTime") or 0),
            last_failure_time=int(data.get("lastFailureTime") or 0),
            last_check_time=int(data.get("lastCheckTime") or 0),
            health_score=int(score) if score is not None else None,
            latency=int(data.get("latency", -1)),
            recent=[bool(v) for v in data.get("recent") or []],
        )


@dataclass(frozen=True)
class RunStatistics:
    """Summary of a probe run."""

    total: int
    available: int
    unavailable: int
    average_latency_ms: int
    fastest_url: str
    cached_at: str

    @classmethod
    def compute(cls, results: tuple[ProbeResult, ...], timestamp_ms: int) -> RunStatistics:
        up = [r for r in results if r.available and r.latency_ms >= 0]
        fastest = min(up, key=lambda r: r.latency_ms).url if up else ""
        average = round(sum(r.latency_ms for r in up) / len(up)) if up else 0
        available = sum(1 for r in results if r.available)
        return cls(
            total=len(results),
            available=available,
            unavailable=len(results) - available,
            average_latency_ms=average,
            fastest_url=fastest,
            cached_at=datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "available": self.available,
            "unavailable": self.unavailable,
            "averageLatency": self.average_latency_ms,
            "fastestGateway": self.fastest_url,
            "cachedAt": self.cached_at,
        }


@dataclass(frozen=True)
class ProbeRun:
    """Immutable snapshot of a full sweep."""

    results: tuple[ProbeResult, ...]
    timestamp: int
    version: str
    statistics: RunStatistics

    @classmethod
    def build(cls, results: list[ProbeResult], *, timestamp: int, version: str) -> ProbeRun:
        frozen = tuple(results)
        return cls(
            results=frozen,
            timestamp=timestamp,
            version=version,
            statistics=RunStatistics.compute(frozen, timestamp),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "version": self.version,
            "results": [r.to_dict() for r in self.results],
            "statistics": self.statistics.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProbeRun:
        results = [ProbeResult.from_dict(item) for item in data["results"]]
        return cls.build(results, timestamp=int(data["timestamp"]), version=str(data["version"]))


class VerifyStatus(str, Enum):
    """Verification state of an uploaded file."""

    PENDING = "pending"
    VERIFYING = "verifying"
    OK = "ok"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: object) -> VerifyStatus | None:
        try:
            return cls(str(value or "").lower())
        except ValueError:
            return None


@dataclass
class VerifyRetryEntry:
    """Persisted retry schedule for one file id."""

    attempts_made: int
    max_attempts: int
    next_at: int
    cid: str
    hash: str | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attemptsMade": self.attempts_made,
            "maxAttempts": self.max_attempts,
            "nextAt": self.next_at,
            "cid": self.cid,
            "hash": self.hash,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerifyRetryEntry:
        return cls(
            attempts_made=max(0, int(data.get("attemptsMade") or 0)),
            max_attempts=max(1, int(data.get("maxAttempts") or 1)),
            next_at=int(data.get("nextAt") or 0),
            cid=str(data["cid"]),
            hash=str(data["hash"]) if data.get("hash") else None,
            last_error=str(data["lastError"]) if data.get("lastError") else None,
        )


@dataclass
class FileRecord:
    """The slice of a stored file the verification scheduler reads."""

    id: str
    cid: str
    name: str = ""
    hash: str | None = None
    verified: bool | None = None
    verify_status: VerifyStatus | None = None
    verify_message: str = ""
    uploaded_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cid": self.cid,
            "name": self.name,
            "hash": self.hash,
            "verified": self.verified,
            "verify_status": self.verify_status.value if self.verify_status else None,
            "verify_message": self.verify_message,
            "uploadedAt": self.uploaded_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileRecord:
        return cls(
            id=str(data["id"]),
            cid=str(data.get("cid") or ""),
            name=str(data.get("name") or ""),
            hash=str(data["hash"]) if data.get("hash") else None,
            verified=data.get("verified"),
            verify_status=VerifyStatus.parse(data.get("verify_status")),
            verify_message=str(data.get("verify_message") or ""),
            uploaded_at=int(data.get("uploadedAt") or 0),
        )


@dataclass(frozen=True)
class FilePatch:
    """Verification fields written back to a file record."""

    verified: bool
    verify_status: VerifyStatus
    verify_message: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "verify_status": self.verify_status.value,
            "verify_message": self.verify_message,
        }


def verify_label(record: FileRecord) -> dict[str, str]:
    """Short display label for a file's verification state."""
    status = record.verify_status
    if record.verified is True or status is VerifyStatus.OK:
        return {"text": "Available", "class": "verify-ok", "title": record.verify_message or "Verified"}
    if status is VerifyStatus.VERIFYING:
        return {"text": "Verifying", "class": "verify-verifying", "title": record.verify_message or "Verifying"}
    if status is VerifyStatus.FAILED:
        return {"text": "Failed", "class": "verify-failed", "title": record.verify_message or "Verification failed"}
    if status is VerifyStatus.PENDING:
        return {
            "text": "Waiting",
            "class": "verify-pending",
            "title": record.verify_message or "Waiting for gateways",
        }
    return {"text": "Unknown", "class": "verify-unknown", "title": "No verification recorded"}
