"""Middleware package: error hierarchy and request ID."""

from cloudchan_gateway.middleware.error_handler import (
    CacheWriteError,
    FileRecordNotFoundError,
    GatewayEngineError,
    GatewayNotFoundError,
    InvalidGatewayUrlError,
    NoAvailableGatewayError,
    PermanentVerificationError,
    register_error_handlers,
)
from cloudchan_gateway.middleware.request_id import RequestIdMiddleware, current_request_id

__all__ = [
    "CacheWriteError",
    "FileRecordNotFoundError",
    "GatewayEngineError",
    "GatewayNotFoundError",
    "InvalidGatewayUrlError",
    "NoAvailableGatewayError",
    "PermanentVerificationError",
    "RequestIdMiddleware",
    "current_request_id",
    "register_error_handlers",
]
