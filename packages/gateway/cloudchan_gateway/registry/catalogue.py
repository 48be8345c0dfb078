"""Endpoint registry: the known gateway catalogue and the network profile.

The catalogue is the built-in defaults merged with previously discovered and
user-added gateways. It is persisted as an array of descriptors together with
a version tag; when the tag differs from the running build the persisted list
is discarded and only the defaults remain.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable

from cloudchan_gateway.config.gateways import GatewayDescriptor
from cloudchan_gateway.middleware.error_handler import GatewayNotFoundError
from cloudchan_gateway.models.gateway import Gateway, NetworkProfile, Region
from cloudchan_gateway.registry.validation import host_of, normalize_gateway_url
from cloudchan_gateway.storage.kv import (
    GATEWAYS_KEY,
    GATEWAYS_VERSION_KEY,
    NETWORK_PROFILE_KEY,
    KeyValueStore,
)

logger = logging.getLogger(__name__)


class GatewayRegistry:
    """Ordered, URL-keyed collection of candidate gateways.

    Parameters
    ----------
    store:
        Persistence backend for the catalogue and the network profile.
    defaults:
        Built-in gateway descriptors, always present after ``load()``.
    version:
        Catalogue version tag of the running build.
    default_profile:
        Network profile used when none has been stored.
    """

    def __init__(
        self,
        store: KeyValueStore,
        defaults: Iterable[GatewayDescriptor],
        *,
        version: str,
        default_profile: str = "AUTO",
    ) -> None:
        self._store = store
        self._defaults = list(defaults)
        self._version = version
        self._default_profile = NetworkProfile.parse(default_profile)
        self._gateways: dict[str, Gateway] = {}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> list[Gateway]:
        """Rebuild the catalogue from defaults plus the persisted list."""
        self._gateways = {}
        for descriptor in self._defaults:
            gateway = Gateway.from_descriptor(descriptor)
            self._gateways.setdefault(gateway.url, gateway)

        stored_version = self._store.get(GATEWAYS_VERSION_KEY)
        if stored_version != self._version:
            logger.info(
                "Gateway catalogue version changed (%s -> %s), discarding persisted list",
                stored_version,
                self._version,
            )
            self._store.delete(GATEWAYS_KEY)
            self._store.set(GATEWAYS_VERSION_KEY, self._version)
            return self.all()

        raw = self._store.get(GATEWAYS_KEY)
        if not raw:
            return self.all()

        try:
            cached = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Persisted gateway catalogue is unparsable, using defaults")
            return self.all()
        if not isinstance(cached, list):
            return self.all()

        loaded = 0
        for item in cached:
            try:
                gateway = Gateway.from_descriptor(item)
            except Exception as exc:
                logger.warning("Skipping invalid persisted gateway %r: %s", item, exc)
                continue
            if gateway.url not in self._gateways:
                self._gateways[gateway.url] = gateway
                loaded += 1
        if loaded:
            logger.info("Loaded %d persisted gateways, %d total", loaded, len(self._gateways))
        return self.all()

    def save(self) -> None:
        payload = [g.descriptor() for g in self._gateways.values()]
        self._store.set(GATEWAYS_KEY, json.dumps(payload, ensure_ascii=False))
        self._store.set(GATEWAYS_VERSION_KEY, self._version)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def all(self) -> list[Gateway]:
        return list(self._gateways.values())

    def get(self, url: str) -> Gateway | None:
        return self._gateways.get(url)

    def __contains__(self, url: object) -> bool:
        return url in self._gateways

    def __len__(self) -> int:
        return len(self._gateways)

    def signature(self) -> str:
        """Short digest of the catalogue's identity, used to version cached runs."""
        digest = hashlib.sha256()
        for url in sorted(self._gateways):
            digest.update(url.encode("utf-8"))
            digest.update(b"\n")
        return digest.hexdigest()[:12]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(
        self,
        url: str,
        *,
        name: str | None = None,
        region: str = "AUTO",
        priority: int = 50,
        icon: str = "🌐",
    ) -> tuple[Gateway, bool]:
        """Add a gateway; returns ``(gateway, created)``.

        An already-known URL is returned unchanged with ``created=False``.
        """
        canonical = normalize_gateway_url(url)
        existing = self._gateways.get(canonical)
        if existing is not None:
            return existing, False

        gateway = Gateway(
            name=(name or host_of(canonical))[:60],
            url=canonical,
            region=Region.parse(region),
            priority=priority,
            icon=icon,
        )
        self._gateways[canonical] = gateway
        self.save()
        logger.info("Added gateway %s", canonical, extra={"gateway_url": canonical})
        return gateway, True

    def merge(self, gateways: Iterable[Gateway]) -> list[Gateway]:
        """Add every gateway whose URL is not yet known; returns the new ones."""
        added = [g for g in gateways if g.url not in self._gateways]
        for gateway in added:
            self._gateways[gateway.url] = gateway
        if added:
            self.save()
        return added

    def remove(self, url: str) -> Gateway:
        """Remove a gateway given in any form ``add`` accepts."""
        key = url if url in self._gateways else normalize_gateway_url(url)
        gateway = self._gateways.pop(key, None)
        if gateway is None:
            raise GatewayNotFoundError(url=url)
        self.save()
        logger.info("Removed gateway %s", key, extra={"gateway_url": key})
        return gateway

    def remove_many(self, urls: Iterable[str]) -> list[Gateway]:
        removed = [self._gateways.pop(url) for url in list(urls) if url in self._gateways]
        if removed:
            self.save()
        return removed

    # ------------------------------------------------------------------
    # Network profile
    # ------------------------------------------------------------------

    @property
    def network_profile(self) -> NetworkProfile:
        raw = self._store.get(NETWORK_PROFILE_KEY)
        if raw is None:
            return self._default_profile
        return NetworkProfile.parse(raw)

    def set_network_profile(self, value: str) -> NetworkProfile:
        """Store the preference; unknown values are stored as AUTO."""
        profile = NetworkProfile.parse(value)
        self._store.set(NETWORK_PROFILE_KEY, profile.value)
        return profile
