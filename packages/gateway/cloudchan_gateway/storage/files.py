"""File-record collaborator.

The verification scheduler only needs to read a file's cid/hash/status and
write back ``{verified, verify_status, verify_message}`` patches. The file
manager that owns the records implements ``FileStore``; ``KeyValueFileStore``
keeps them as one JSON map in a ``KeyValueStore``.
"""

from __future__ import annotations

import json
import logging
from typing import Protocol

from cloudchan_gateway.models.records import FilePatch, FileRecord
from cloudchan_gateway.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

FILES_KEY = "cc_files_v1"


class FileStore(Protocol):
    def get(self, file_id: str) -> FileRecord | None: ...

    def list_records(self) -> list[FileRecord]: ...

    def upsert(self, record: FileRecord) -> None: ...

    def apply_patch(self, file_id: str, patch: FilePatch) -> FileRecord | None: ...


class KeyValueFileStore:
    """File records stored as a JSON object keyed by file id."""

    def __init__(self, kv: KeyValueStore, key: str = FILES_KEY) -> None:
        self._kv = kv
        self._key = key

    def _load(self) -> dict[str, dict]:
        raw = self._kv.get(self._key)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Unparsable file records blob, treating as empty")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, dict]) -> None:
        self._kv.set(self._key, json.dumps(data, ensure_ascii=False))

    def get(self, file_id: str) -> FileRecord | None:
        item = self._load().get(file_id)
        if not isinstance(item, dict):
            return None
        return FileRecord.from_dict({**item, "id": file_id})

    def list_records(self) -> list[FileRecord]:
        return [
            FileRecord.from_dict({**item, "id": file_id})
            for file_id, item in self._load().items()
            if isinstance(item, dict)
        ]

    def upsert(self, record: FileRecord) -> None:
        data = self._load()
        data[record.id] = record.to_dict()
        self._save(data)

    def apply_patch(self, file_id: str, patch: FilePatch) -> FileRecord | None:
        """Merge ``patch`` into the stored record; ``None`` if it is gone."""
        data = self._load()
        item = data.get(file_id)
        if not isinstance(item, dict):
            return None
        item.update(patch.as_dict())
        data[file_id] = item
        self._save(data)
        return FileRecord.from_dict({**item, "id": file_id})
