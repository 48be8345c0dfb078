"""Pydantic Settings for the gateway engine.

All environment variables use the CLOUDCHAN_ prefix.
Example: CLOUDCHAN_PROBE_TIMEOUT_MS=5000, CLOUDCHAN_STATE_DIR=/var/lib/cloudchan
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

_DEFAULT_GATEWAYS_PATH = str(Path(__file__).with_name("default_gateways.yaml"))


class GatewaySettings(BaseSettings):
    """Gateway engine configuration validated from environment variables."""

    # Service
    port: int = 8002
    log_level: str = "INFO"
    app_version: str = "2.2.1"
    build_id: str = "dev"
    state_dir: str = ".cloudchan-state"

    # Catalogue
    default_gateways_path: str = _DEFAULT_GATEWAYS_PATH
    public_gateway_sources: list[str] = [
        "https://raw.githubusercontent.com/ipfs/public-gateway-checker/main/gateways.json",
        "https://cdn.jsdelivr.net/gh/ipfs/public-gateway-checker@main/gateways.json",
    ]
    discovery_timeout_seconds: float = Field(default=15.0, gt=0)
    network_profile: Literal["AUTO", "CN", "INTL"] = "AUTO"

    # Probe
    test_cid: str = "bafybeifx7yeb55armcsxwwitkymga5xf53dxiarykms3ygqic223w5sk3m"
    probe_timeout_ms: int = Field(default=8000, ge=500)
    probe_retry_times: int = Field(default=2, ge=0)
    probe_retry_delay_ms: int = Field(default=1000, ge=0)
    probe_range_fallback: bool = True
    probe_concurrency: int = Field(default=6, ge=1)
    race_batch_size: int = Field(default=3, ge=1)
    race_retry_rounds: int = Field(default=2, ge=1)
    race_retry_delay_ms: int = Field(default=600, ge=0)

    # Result cache
    cache_version: str = "v3"
    cache_expiry_seconds: int = Field(default=600, ge=1)
    cache_compress_threshold_bytes: int = Field(default=2048, ge=0)

    # Health ledger
    health_history_expiry_days: int = Field(default=30, ge=1)
    health_window_size: int = Field(default=10, ge=1)

    # Cleanup policy
    cleanup_enabled: bool = True
    auto_cleanup: bool = False
    cleanup_max_failure_count: int = Field(default=10, ge=1)
    cleanup_max_consecutive_failures: int = Field(default=5, ge=1)
    cleanup_max_unused_days: float = Field(default=7.0, gt=0)
    cleanup_min_health_score: int = Field(default=10, ge=0, le=100)
    protected_priority_threshold: int = Field(default=10, ge=0)

    # Verification retry
    verify_retry_enabled: bool = True
    verify_max_attempts: int = Field(default=6, ge=1)
    verify_base_delay_ms: int = Field(default=3000, ge=500)
    verify_max_delay_ms: int = Field(default=120000, ge=2000)
    verify_jitter_ms: int = Field(default=800, ge=0)
    verify_busy_delay_cap_ms: int = Field(default=15000, ge=500)
    verify_failed_window_seconds: int = Field(default=86400, ge=0)
    verify_stuck_window_seconds: int = Field(default=180, ge=10)
    verify_method: Literal["fast", "hash"] = "fast"
    verify_max_retries: int = Field(default=2, ge=1, le=5)
    verify_full_timeout_ms: int = Field(default=60000, ge=1000)
    verify_parallel_gateways: int = Field(default=3, ge=1, le=8)
    verify_range_parallel: int = Field(default=2, ge=1, le=6)

    # Propagation warming
    propagation_max_gateways: int = Field(default=8, ge=1)
    propagation_concurrency: int = Field(default=5, ge=1)
    propagation_timeout_ms: int = Field(default=15000, ge=500)
    propagation_range_bytes: int = Field(default=1024, ge=1)

    model_config = {"env_prefix": "CLOUDCHAN_"}

    @property
    def catalogue_version(self) -> str:
        """Version tag for the persisted endpoint catalogue."""
        return f"{self.app_version}-{self.build_id}"
