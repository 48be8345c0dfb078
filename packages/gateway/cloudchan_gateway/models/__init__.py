"""Public models for the gateway engine."""

from cloudchan_gateway.models.gateway import (
    ErrorType,
    Gateway,
    NetworkProfile,
    ProbeResult,
    Region,
)
from cloudchan_gateway.models.records import (
    FilePatch,
    FileRecord,
    HealthRecord,
    ProbeRun,
    RunStatistics,
    VerifyRetryEntry,
    VerifyStatus,
    verify_label,
)
from cloudchan_gateway.models.requests import (
    AddGatewayRequest,
    NetworkProfileRequest,
    PropagateRequest,
    UploadedFileRequest,
)
from cloudchan_gateway.models.responses import ApiResponse, ok

__all__ = [
    "AddGatewayRequest",
    "ApiResponse",
    "ErrorType",
    "FilePatch",
    "FileRecord",
    "Gateway",
    "HealthRecord",
    "NetworkProfile",
    "NetworkProfileRequest",
    "ProbeResult",
    "ProbeRun",
    "PropagateRequest",
    "Region",
    "RunStatistics",
    "UploadedFileRequest",
    "VerifyRetryEntry",
    "VerifyStatus",
    "ok",
    "verify_label",
]
