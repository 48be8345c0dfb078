"""Persistence backends and the file-record collaborator."""

from cloudchan_gateway.storage.files import FileStore, KeyValueFileStore
from cloudchan_gateway.storage.kv import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore

__all__ = [
    "FileKeyValueStore",
    "FileStore",
    "KeyValueFileStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
]
