"""Propagation warmer."""

from cloudchan_gateway.propagation.warmer import PropagationSummary, PropagationWarmer, WarmResult

__all__ = [
    "PropagationSummary",
    "PropagationWarmer",
    "WarmResult",
]
