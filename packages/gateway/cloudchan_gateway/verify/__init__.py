"""Availability verification and the retry scheduler."""

from cloudchan_gateway.verify.checker import AvailabilityVerifier, VerifyOutcome
from cloudchan_gateway.verify.scheduler import VerificationScheduler

__all__ = [
    "AvailabilityVerifier",
    "VerificationScheduler",
    "VerifyOutcome",
]
