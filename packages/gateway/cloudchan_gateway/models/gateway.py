"""Gateway and probe result models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from cloudchan_gateway.config.gateways import GatewayDescriptor


class Region(str, Enum):
    """Network region a gateway is tagged with."""

    CN = "CN"
    INTL = "INTL"
    AUTO = "AUTO"

    @classmethod
    def parse(cls, value: object) -> Region:
        try:
            return cls(str(value or "").upper())
        except ValueError:
            return cls.AUTO


class NetworkProfile(str, Enum):
    """User-declared network preference."""

    AUTO = "AUTO"
    CN = "CN"
    INTL = "INTL"

    @classmethod
    def parse(cls, value: object) -> NetworkProfile:
        try:
            return cls(str(value or "").upper())
        except ValueError:
            return cls.AUTO


class ErrorType(str, Enum):
    """Failure classification for a single probe."""

    NONE = "none"
    TIMEOUT = "timeout"
    NETWORK = "network"
    SERVER = "server"


@dataclass
class Gateway:
    """A candidate gateway.

    Identity is ``url``; the remaining run-state fields are refreshed after
    every probe and are never persisted with the catalogue.
    """

    name: str
    url: str
    region: Region = Region.AUTO
    priority: int = 50
    icon: str = "🌐"

    available: bool | None = None
    latency_ms: int = -1
    health_score: int | None = None
    reliability: float | None = None
    error_type: ErrorType = ErrorType.NONE
    last_checked: int = 0

    @classmethod
    def from_descriptor(cls, descriptor: GatewayDescriptor | dict[str, Any]) -> Gateway:
        if isinstance(descriptor, dict):
            descriptor = GatewayDescriptor.model_validate(descriptor)
        return cls(
            name=descriptor.name,
            url=descriptor.url,
            region=Region.parse(descriptor.region),
            priority=descriptor.priority,
            icon=descriptor.icon,
        )

    def descriptor(self) -> dict[str, Any]:
        """Identity fields only, in the persisted catalogue format."""
        return {
            "name": self.name,
            "url": self.url,
            "icon": self.icon,
            "priority": self.priority,
            "region": self.region.value,
        }

    def object_url(self, cid: str) -> str:
        return f"{self.url}{cid}"


@dataclass
class ProbeResult:
    """Outcome of one availability/latency check against one gateway."""

    url: str
    name: str
    available: bool
    latency_ms: int = -1
    error_type: ErrorType = ErrorType.NONE
    status_code: int = 0
    method: str = "head"
    attempts: int = 1
    cancelled: bool = False
    checked_at: int = 0
    region: Region = Region.AUTO
    priority: int = 50
    health_score: int = 0
    reliability: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "name": self.name,
            "available": self.available,
            "latencyMs": self.latency_ms,
            "errorType": self.error_type.value,
            "statusCode": self.status_code,
            "method": self.method,
            "attempts": self.attempts,
            "checkedAt": self.checked_at,
            "region": self.region.value,
            "priority": self.priority,
            "healthScore": self.health_score,
            "reliability": self.reliability,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProbeResult:
        return cls(
            url=str(data["url"]),
            name=str(data.get("name") or data["url"]),
            available=bool(data.get("available", False)),
            latency_ms=int(data.get("latencyMs", -1)),
            error_type=ErrorType(data.get("errorType", ErrorType.NONE.value)),
            status_code=int(data.get("statusCode", 0)),
            method=str(data.get("method", "head")),
            attempts=int(data.get("attempts", 1)),
            checked_at=int(data.get("checkedAt", 0)),
            region=Region.parse(data.get("region")),
            priority=int(data.get("priority", 50)),
            health_score=int(data.get("healthScore", 0)),
            reliability=float(data.get("reliability", 0.0)),
        )
