"""Short-lived cache of the latest full probe run.

A run is stored together with its version tag and timestamp. Large payloads
are gzip-compressed and base64-encoded (such blobs start with ``H4sI``); if
compression fails the plain JSON is stored instead. Every write is read back
and the result count compared.

``load()`` treats a missing, unparsable, version-mismatched, future-dated or
expired entry as a miss and never raises.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from cloudchan_gateway.middleware.error_handler import CacheWriteError
from cloudchan_gateway.models.records import ProbeRun
from cloudchan_gateway.storage.kv import PROBE_CACHE_KEY, KeyValueStore

logger = logging.getLogger(__name__)

_GZIP_B64_PREFIX = "H4sI"


@dataclass(frozen=True)
class CacheLookup:
    """Outcome of ``ResultCache.load``."""

    run: ProbeRun | None
    age_seconds: int = 0
    is_expired: bool = True

    @property
    def hit(self) -> bool:
        return self.run is not None and not self.is_expired


MISS = CacheLookup(run=None)


def encode_payload(data: dict, compress_threshold: int) -> str:
    text = json.dumps(data, ensure_ascii=False)
    if len(text.encode("utf-8")) < compress_threshold:
        return text
    try:
        packed = gzip.compress(text.encode("utf-8"))
        return base64.b64encode(packed).decode("ascii")
    except (OSError, ValueError) as exc:
        logger.warning("Probe cache compression failed, storing plain JSON: %s", exc)
        return text


def decode_payload(raw: str) -> dict:
    """Inverse of ``encode_payload``; raises ``ValueError`` on garbage."""
    if raw.startswith(_GZIP_B64_PREFIX):
        try:
            text = gzip.decompress(base64.b64decode(raw)).decode("utf-8")
        except (binascii.Error, OSError, EOFError) as exc:
            raise ValueError(f"corrupt compressed cache: {exc}") from exc
    else:
        text = raw
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("cache payload is not an object")
    return data


class ResultCache:
    """Versioned, expiring store for one ``ProbeRun``.

    Parameters
    ----------
    store:
        Persistence backend.
    version:
        Callable returning the current version tag; a stored run with a
        different tag is a miss.
    expiry_seconds:
        Maximum age of a usable run.
    compress_threshold_bytes:
        Payloads at or above this size are compressed.
    clock:
        Wall clock in seconds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        version: Callable[[], str],
        expiry_seconds: int = 600,
        compress_threshold_bytes: int = 2048,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._version = version
        self._expiry_ms = expiry_seconds * 1000
        self._compress_threshold = compress_threshold_bytes
        self._clock = clock

    @property
    def current_version(self) -> str:
        return self._version()

    def load(self) -> CacheLookup:
        raw = self._store.get(PROBE_CACHE_KEY)
        if not raw:
            return MISS

        try:
            data = decode_payload(raw)
            if not isinstance(data.get("results"), list):
                raise ValueError("results missing")
            run = ProbeRun.from_dict(data)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Probe result cache unreadable, ignoring: %s", exc)
            return MISS

        if run.version != self.current_version:
            logger.info(
                "Probe result cache version mismatch (%s != %s)", run.version, self.current_version
            )
            return MISS

        age_ms = int(self._clock() * 1000) - run.timestamp
        if age_ms < 0:
            logger.warning("Probe result cache timestamp is in the future, ignoring")
            return MISS
        if age_ms >= self._expiry_ms:
            logger.info("Probe result cache expired (%ds old)", age_ms // 1000)
            self._store.delete(PROBE_CACHE_KEY)
            return MISS

        return CacheLookup(run=run, age_seconds=round(age_ms / 1000), is_expired=False)

    def save(self, run: ProbeRun) -> bool:
        """Persist ``run``; returns False when there was nothing to store.

        Raises
        ------
        CacheWriteError
            If the write fails or the read-back does not match.
        """
        if not run.results:
            logger.warning("Skipping probe cache write for an empty run")
            return False

        encoded = encode_payload(run.to_dict(), self._compress_threshold)
        try:
            self._store.set(PROBE_CACHE_KEY, encoded)
        except OSError as exc:
            raise CacheWriteError(str(exc)) from exc

        saved = self._store.get(PROBE_CACHE_KEY)
        if not saved:
            raise CacheWriteError("Probe cache read back empty")
        try:
            stored_count = len(decode_payload(saved).get("results") or [])
        except ValueError as exc:
            raise CacheWriteError(f"Probe cache read back unparsable: {exc}") from exc
        if stored_count != len(run.results):
            raise CacheWriteError(
                "Probe cache read back mismatch",
                expected=len(run.results),
                stored=stored_count,
            )
        return True

    def clear(self) -> None:
        self._store.delete(PROBE_CACHE_KEY)
