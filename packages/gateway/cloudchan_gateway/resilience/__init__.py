"""Resilience policies."""

from cloudchan_gateway.resilience.cleanup import CleanupCandidate, CleanupPolicy, CleanupReport

__all__ = [
    "CleanupCandidate",
    "CleanupPolicy",
    "CleanupReport",
]
