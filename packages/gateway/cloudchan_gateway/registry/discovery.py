"""Public gateway discovery.

Fetches community-maintained gateway lists and turns their entries into
catalogue candidates. Sources are fetched concurrently; a failing source is
logged and contributes nothing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

import httpx

from cloudchan_gateway.middleware.error_handler import InvalidGatewayUrlError
from cloudchan_gateway.models.gateway import Gateway, Region
from cloudchan_gateway.registry.validation import host_of, normalize_gateway_url

logger = logging.getLogger(__name__)

DISCOVERED_PRIORITY = 50


def extract_entries(data: Any) -> list[Any]:
    """Flatten the list shapes published by gateway directories.

    Accepted: a bare array, ``{"gateways": [...]}``, ``{"info": [{ipfsGateway,
    name}]}`` or any object whose values are arrays.
    """
    if isinstance(data, list):
        return data
    if not isinstance(data, dict):
        return []
    if isinstance(data.get("gateways"), list):
        return data["gateways"]
    if isinstance(data.get("info"), list):
        return [
            {"url": info.get("ipfsGateway"), "name": info.get("name")}
            for info in data["info"]
            if isinstance(info, dict)
        ]
    entries: list[Any] = []
    for value in data.values():
        if isinstance(value, list):
            entries.extend(value)
    return entries


def _entry_to_gateway(entry: Any) -> Gateway | None:
    if isinstance(entry, str):
        url, name = entry, None
    elif isinstance(entry, dict):
        url = entry.get("url") or entry.get("link") or entry.get("gateway")
        name = entry.get("name") or entry.get("title") or entry.get("service")
    else:
        return None

    if not isinstance(url, str) or not url.startswith("http") or ":hash" in url:
        return None
    try:
        canonical = normalize_gateway_url(url)
    except InvalidGatewayUrlError:
        return None
    return Gateway(
        name=str(name or host_of(canonical))[:40],
        url=canonical,
        region=Region.AUTO,
        priority=DISCOVERED_PRIORITY,
    )


def parse_gateway_list(data: Any, known_urls: Iterable[str] = ()) -> list[Gateway]:
    """Convert one source payload into new gateways, skipping known URLs."""
    seen = set(known_urls)
    gateways: list[Gateway] = []
    for entry in extract_entries(data):
        gateway = _entry_to_gateway(entry)
        if gateway is None or gateway.url in seen:
            continue
        seen.add(gateway.url)
        gateways.append(gateway)
    return gateways


class GatewayDiscovery:
    """Fetches public gateway lists over HTTP.

    Parameters
    ----------
    client:
        Shared async HTTP client.
    sources:
        URLs of JSON gateway lists.
    timeout_seconds:
        Per-source request timeout.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        sources: list[str],
        timeout_seconds: float = 15.0,
    ) -> None:
        self._client = client
        self._sources = list(sources)
        self._timeout = timeout_seconds

    async def _fetch_source(self, source: str) -> Any:
        try:
            response = await self._client.get(
                source,
                headers={"Accept": "application/json", "Cache-Control": "no-cache"},
                timeout=self._timeout,
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Gateway source %s failed: %s", source, exc)
            return None

    async def discover(self, known_urls: Iterable[str] = ()) -> list[Gateway]:
        """Return gateways from every source whose URL is not yet known."""
        payloads = await asyncio.gather(*(self._fetch_source(s) for s in self._sources))

        seen = set(known_urls)
        found: list[Gateway] = []
        for source, payload in zip(self._sources, payloads):
            if payload is None:
                continue
            fresh = parse_gateway_list(payload, seen)
            seen.update(g.url for g in fresh)
            found.extend(fresh)
            logger.info("Gateway source %s contributed %d new gateways", source, len(fresh))
        return found
