"""IPFS/Crust gateway health probing, selection, verification and warming."""

from cloudchan_gateway.config.settings import GatewaySettings
from cloudchan_gateway.services.engine import GatewayEngine

__all__ = ["GatewayEngine", "GatewaySettings"]
