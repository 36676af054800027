"""
Storage module - remote database, device cache and audio objects.
"""

from secretary.services.storage.cache import LocalCacheStore
from secretary.services.storage.database import (
    Base,
    close_db,
    get_engine,
    get_session_factory,
    init_db,
    reset_engine,
    session_scope,
)
from secretary.services.storage.kv import KeyValueStore, MemoryKeyValueStore, SqlKeyValueStore
from secretary.services.storage.models_db import RecordingRow, UserProfileRow
from secretary.services.storage.objects import (
    BaseObjectStore,
    HttpObjectStore,
    LocalObjectStore,
    audio_key,
)
from secretary.services.storage.repository import RecordingRepository

__all__ = [
    "Base",
    "BaseObjectStore",
    "HttpObjectStore",
    "KeyValueStore",
    "LocalCacheStore",
    "LocalObjectStore",
    "MemoryKeyValueStore",
    "RecordingRepository",
    "RecordingRow",
    "SqlKeyValueStore",
    "UserProfileRow",
    "audio_key",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "reset_engine",
    "session_scope",
]
