"""Probe and probe orchestration."""

from cloudchan_gateway.probe.orchestrator import ProbeOrchestrator, first_success
from cloudchan_gateway.probe.prober import CheckOutcome, GatewayProber

__all__ = [
    "CheckOutcome",
    "GatewayProber",
    "ProbeOrchestrator",
    "first_success",
]
