"""Key-value persistence backends.

The engine persists every blob (catalogue, health history, cached probe run,
network profile, preferred gateway, verify-retry map) as a string under a
fixed key. Any backend implementing ``KeyValueStore`` can be injected.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


# Persisted keys
GATEWAYS_KEY = "cc_gateways_v2"
GATEWAYS_VERSION_KEY = "cc_gateways_version"
NETWORK_PROFILE_KEY = "cc_network_profile"
PREFERRED_GATEWAY_KEY = "cc_preferred_gateway_base"
HEALTH_HISTORY_KEY = "cc_gateway_health_history_v1"
PROBE_CACHE_KEY = "cc_gateway_check_cache_v3"
VERIFY_RETRY_KEY = "cc_verify_retry_state_v1"


class KeyValueStore(Protocol):
    """Minimal string key-value contract."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local store, used by tests and ephemeral deployments."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class FileKeyValueStore:
    """One file per key under ``directory``.

    Writes go to a temporary sibling and are moved into place with
    ``os.replace`` so a reader never sees a half-written blob.
    """

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._dir / f"{_SAFE_KEY.sub('_', key)}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Failed to read state key %s: %s", key, exc)
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        os.replace(tmp, path)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
