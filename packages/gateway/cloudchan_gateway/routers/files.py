"""File verification endpoints.

- POST /api/v1/files/{file_id}/uploaded: record an upload and enroll it
- POST /api/v1/files/{file_id}/verify: manual verification pass
- GET  /api/v1/files/{file_id}: stored record plus its verify label
- GET  /api/v1/verify/retries: persisted retry map
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter

from cloudchan_gateway.middleware.error_handler import FileRecordNotFoundError
from cloudchan_gateway.models.records import FileRecord, verify_label
from cloudchan_gateway.models.requests import UploadedFileRequest
from cloudchan_gateway.models.responses import ok

if TYPE_CHECKING:
    from cloudchan_gateway.services.engine import GatewayEngine


def _file_payload(record: FileRecord, engine: Any) -> dict:
    entry = engine.retry_entries().get(record.id)
    return {
        **record.to_dict(),
        "label": verify_label(record),
        "retry": entry.to_dict() if entry is not None else None,
    }


def create_files_router(*, engine: GatewayEngine | Any = None) -> APIRouter:
    """Factory that creates the files router with injected dependencies."""

    files_router = APIRouter(prefix="/api/v1", tags=["files"])

    @files_router.post("/files/{file_id}/uploaded")
    async def record_upload(file_id: str, body: UploadedFileRequest) -> dict:
        """Reset the file to pending, start warming and enroll it for retries."""
        record = engine.record_upload(
            file_id, body.cid, name=body.name, content_hash=body.hash
        )
        return ok(_file_payload(record, engine))

    @files_router.post("/files/{file_id}/verify")
    async def verify_file(file_id: str) -> dict:
        """Run one verification pass now, outside the backoff schedule."""
        outcome = await engine.verify_now(file_id)
        record = engine.files.get(file_id)
        return ok(
            {
                "success": outcome.success,
                "message": outcome.message,
                "permanent": outcome.permanent,
                "gateway_url": outcome.gateway_url,
                "file": _file_payload(record, engine) if record is not None else None,
            }
        )

    @files_router.get("/files/{file_id}")
    async def get_file(file_id: str) -> dict:
        record = engine.files.get(file_id)
        if record is None:
            raise FileRecordNotFoundError(file_id=file_id)
        return ok(_file_payload(record, engine))

    @files_router.get("/verify/retries")
    async def list_retries() -> dict:
        """Persisted retry entries keyed by file id."""
        entries = engine.retry_entries()
        return ok(
            {
                "entries": {file_id: e.to_dict() for file_id, e in entries.items()},
                "count": len(entries),
            }
        )

    return files_router
