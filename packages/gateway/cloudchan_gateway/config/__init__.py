"""Configuration module: settings and the built-in gateway catalogue."""

from cloudchan_gateway.config.gateways import GatewayDescriptor, load_default_gateways
from cloudchan_gateway.config.settings import GatewaySettings

__all__ = [
    "GatewayDescriptor",
    "GatewaySettings",
    "load_default_gateways",
]
