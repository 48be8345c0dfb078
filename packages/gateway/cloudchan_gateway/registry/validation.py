"""Gateway URL normalisation."""

from __future__ import annotations

from urllib.parse import urlparse

from cloudchan_gateway.middleware.error_handler import InvalidGatewayUrlError

_ALLOWED_SCHEMES = {"http", "https"}


def normalize_gateway_url(url: str) -> str:
    """Return the canonical path-style form of a gateway URL.

    Adds ``https://`` when no scheme is present, guarantees a trailing ``/``
    and appends ``ipfs/`` when the path does not already contain ``/ipfs/``.

    Raises
    ------
    InvalidGatewayUrlError
        If the URL is empty, uses a non-http scheme or has no usable host.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidGatewayUrlError("Gateway URL must not be empty")

    normalized = url.strip()
    if not normalized.startswith(("http://", "https://")):
        if "://" in normalized:
            raise InvalidGatewayUrlError("Unsupported URL scheme", url=url)
        normalized = "https://" + normalized

    try:
        parsed = urlparse(normalized)
    except ValueError as exc:
        raise InvalidGatewayUrlError("Malformed gateway URL", url=url) from exc

    if parsed.scheme not in _ALLOWED_SCHEMES:
        raise InvalidGatewayUrlError("Unsupported URL scheme", url=url)
    if not parsed.hostname or len(parsed.hostname) < 2:
        raise InvalidGatewayUrlError("Invalid host name", url=url)

    if not normalized.endswith("/"):
        normalized += "/"
    if "/ipfs/" not in normalized:
        normalized += "ipfs/"
    return normalized


def host_of(url: str) -> str:
    """Host part of a URL, used as a display name fallback."""
    return urlparse(url).hostname or url
