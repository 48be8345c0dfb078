"""Endpoint registry: catalogue, URL normalisation and public discovery."""

from cloudchan_gateway.registry.catalogue import GatewayRegistry
from cloudchan_gateway.registry.discovery import GatewayDiscovery, parse_gateway_list
from cloudchan_gateway.registry.validation import normalize_gateway_url

__all__ = [
    "GatewayDiscovery",
    "GatewayRegistry",
    "normalize_gateway_url",
    "parse_gateway_list",
]
