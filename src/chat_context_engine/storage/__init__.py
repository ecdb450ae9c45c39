from chat_context_engine.storage.autosave import AutoSaveScheduler, SaveState
from chat_context_engine.storage.repository import (
    InMemoryRepository,
    KeyValueRepository,
    SqliteRepository,
    TenantScope,
)
from chat_context_engine.storage.session_store import SessionStore
from chat_context_engine.storage.share_manager import ShareManager, ShareStatus

__all__ = [
    "AutoSaveScheduler",
    "InMemoryRepository",
    "KeyValueRepository",
    "SaveState",
    "SessionStore",
    "ShareManager",
    "ShareStatus",
    "SqliteRepository",
    "TenantScope",
]
