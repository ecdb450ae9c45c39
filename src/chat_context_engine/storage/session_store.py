from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from loguru import logger

from chat_context_engine.errors import StorageError, StorageQuotaExceeded
from chat_context_engine.models import (
    DEFAULT_TITLE,
    ChatMessage,
    ChatSession,
    SessionIndexEntry,
    StorageStats,
    utc_now,
)
from chat_context_engine.storage.repository import KeyValueRepository, TenantScope

SESSION_KEY_PREFIX = "session:"
INDEX_KEY = "index"
ACTIVE_KEY = "active"

DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024
DEFAULT_MAX_SESSIONS = 50
DEFAULT_EVICTION_BATCH_SIZE = 10


def session_key(session_id: str) -> str:
    return SESSION_KEY_PREFIX + session_id


def _dumps(value) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


class SessionStore:
    """Tenant-scoped session persistence with a byte quota and a session cap.

    Each tenant owns one body key per session, one index key and one active
    pointer key. The index is always re-read from the repository before it
    is changed, and body plus index are written in one repository
    transaction.
    """

    def __init__(
        self,
        repository: KeyValueRepository,
        *,
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        eviction_batch_size: int = DEFAULT_EVICTION_BATCH_SIZE,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] | None = None,
    ):
        self._repository = repository
        self._quota_bytes = quota_bytes
        self._max_sessions = max(1, max_sessions)
        self._eviction_batch_size = max(1, eviction_batch_size)
        self._clock = clock
        self._id_factory = id_factory or (lambda: f"session-{uuid4().hex}")

    @property
    def quota_bytes(self) -> int:
        return self._quota_bytes

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    def _scope(self, tenant_id: str) -> TenantScope:
        return TenantScope(self._repository, tenant_id)

    # --- reads -------------------------------------------------------------

    def get(self, tenant_id: str, session_id: str) -> ChatSession | None:
        scope = self._scope(tenant_id)
        raw = scope.get(session_key(session_id))
        if raw is None:
            return None
        try:
            session = ChatSession.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as ex:
            raise StorageError.invalid_data(f"Failed to parse session {session_id}", ex) from ex
        if session.tenant_id != tenant_id:
            logger.warning(f"Session {session_id} body belongs to another tenant, ignoring")
            return None
        return session

    def list_sessions(self, tenant_id: str) -> list[SessionIndexEntry]:
        index = self._read_index(self._scope(tenant_id))
        return sorted(index, key=lambda e: e.updated_at, reverse=True)

    def get_active_id(self, tenant_id: str) -> str | None:
        return self._scope(tenant_id).get(ACTIVE_KEY)

    def get_current(self, tenant_id: str) -> ChatSession | None:
        active_id = self.get_active_id(tenant_id)
        if not active_id:
            return None
        return self.get(tenant_id, active_id)

    def get_storage_stats(self, tenant_id: str) -> StorageStats:
        scope = self._scope(tenant_id)
        return StorageStats(
            used=scope.used_bytes(),
            total=self._quota_bytes,
            session_count=len(self._read_index(scope)),
        )

    # --- writes ------------------------------------------------------------

    def create(
        self,
        tenant_id: str,
        initial_messages: list[ChatMessage],
        *,
        title: str | None = None,
        session_id: str | None = None,
        summary: str | None = None,
    ) -> ChatSession:
        now = self._clock()
        session = ChatSession(
            id=session_id or self._id_factory(),
            tenant_id=tenant_id,
            title=title or ChatSession.derive_title(initial_messages),
            messages=list(initial_messages),
            created_at=now,
            updated_at=now,
            summary=summary,
        )
        self._write(session)
        logger.info(f"Created session {session.id} for tenant {tenant_id} ({session.message_count} messages)")
        return session

    def update(
        self,
        tenant_id: str,
        session_id: str,
        messages: list[ChatMessage],
        *,
        summary: str | None = None,
        title: str | None = None,
    ) -> ChatSession:
        """Replace the session body. Unknown ids are created with that id."""
        session = self.get(tenant_id, session_id)
        if session is None:
            return self.create(tenant_id, messages, title=title, session_id=session_id, summary=summary)

        session.messages = list(messages)
        session.updated_at = self._clock()
        if summary is not None:
            session.summary = summary
        if title:
            session.title = title
        elif session.title == DEFAULT_TITLE:
            session.title = ChatSession.derive_title(messages)
        self._write(session)
        logger.debug(f"Updated session {session_id} ({session.message_count} messages)")
        return session

    def delete(self, tenant_id: str, session_id: str) -> None:
        scope = self._scope(tenant_id)
        with self._repository.transaction():
            scope.delete(session_key(session_id))
            index = [e for e in self._read_index(scope) if e.id != session_id]
            self._write_index(scope, index)
            if scope.get(ACTIVE_KEY) == session_id:
                scope.delete(ACTIVE_KEY)
        logger.info(f"Deleted session {session_id} for tenant {tenant_id}")

    def delete_all(self, tenant_id: str) -> None:
        scope = self._scope(tenant_id)
        with self._repository.transaction():
            for key in scope.list_keys(SESSION_KEY_PREFIX):
                scope.delete(key)
            scope.delete(INDEX_KEY)
            scope.delete(ACTIVE_KEY)
        logger.info(f"Deleted all sessions for tenant {tenant_id}")

    def set_active(self, tenant_id: str, session_id: str) -> None:
        scope = self._scope(tenant_id)
        if scope.get(session_key(session_id)) is None:
            raise StorageError.not_found("Session", session_id)
        scope.set(ACTIVE_KEY, session_id)

    def clear_active(self, tenant_id: str) -> None:
        self._scope(tenant_id).delete(ACTIVE_KEY)

    # --- internals ---------------------------------------------------------

    def _read_index(self, scope: TenantScope) -> list[SessionIndexEntry]:
        raw = scope.get(INDEX_KEY)
        if not raw:
            return []
        try:
            return [SessionIndexEntry.from_dict(item) for item in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as ex:
            raise StorageError.invalid_data("Failed to parse sessions index", ex) from ex

    def _serialize_index(self, index: list[SessionIndexEntry]) -> str:
        ordered = sorted(index, key=lambda e: e.updated_at, reverse=True)
        return _dumps([e.to_dict() for e in ordered])

    def _write_index(self, scope: TenantScope, index: list[SessionIndexEntry]) -> None:
        if index:
            scope.set(INDEX_KEY, self._serialize_index(index))
        else:
            scope.delete(INDEX_KEY)

    def _write(self, session: ChatSession) -> None:
        scope = self._scope(session.tenant_id)
        body = _dumps(session.to_dict())

        with self._repository.transaction():
            index = [e for e in self._read_index(scope) if e.id != session.id]
            index.append(session.index_entry())
            index = self._make_room(scope, session.id, body, index)
            try:
                scope.set(session_key(session.id), body)
                self._write_index(scope, index)
            except StorageQuotaExceeded:
                logger.warning("Storage backend rejected the write, evicting old sessions and retrying once")
                index = self._evict(scope, index, self._eviction_candidates(scope, session.id, index))
                try:
                    scope.set(session_key(session.id), body)
                    self._write_index(scope, index)
                except StorageQuotaExceeded as retry_error:
                    raise StorageError.quota_exceeded(retry_error) from retry_error

    def _projected_usage(
        self,
        scope: TenantScope,
        session_id: str,
        body: str,
        index: list[SessionIndexEntry],
        freed: int = 0,
    ) -> int:
        key = session_key(session_id)
        used = scope.used_bytes() - freed
        used -= scope.size_of(key, scope.get(key))
        used += scope.size_of(key, body)
        used -= scope.size_of(INDEX_KEY, scope.get(INDEX_KEY))
        used += scope.size_of(INDEX_KEY, self._serialize_index(index))
        return used

    def _eviction_candidates(
        self,
        scope: TenantScope,
        target_id: str,
        index: list[SessionIndexEntry],
    ) -> list[SessionIndexEntry]:
        protected = {target_id, scope.get(ACTIVE_KEY)}
        oldest_first = sorted(index, key=lambda e: e.updated_at)
        return [e for e in oldest_first if e.id not in protected][: self._eviction_batch_size]

    def _make_room(
        self,
        scope: TenantScope,
        target_id: str,
        body: str,
        index: list[SessionIndexEntry],
    ) -> list[SessionIndexEntry]:
        while True:
            over_count = len(index) - self._max_sessions
            usage = self._projected_usage(scope, target_id, body, index)
            if over_count <= 0 and usage <= self._quota_bytes:
                return index

            candidates = self._eviction_candidates(scope, target_id, index)
            if not candidates:
                logger.error(
                    f"Session {target_id} cannot be stored: needs {usage:,} bytes, quota is {self._quota_bytes:,}"
                )
                raise StorageError.quota_exceeded()

            # Pick the fewest oldest sessions (at most one batch) that make the write fit.
            victims: list[SessionIndexEntry] = []
            remaining = list(index)
            freed = 0
            for entry in candidates:
                if len(remaining) <= self._max_sessions and (
                    self._projected_usage(scope, target_id, body, remaining, freed) <= self._quota_bytes
                ):
                    break
                victims.append(entry)
                remaining = [e for e in remaining if e.id != entry.id]
                freed += scope.size_of(session_key(entry.id), scope.get(session_key(entry.id)))

            index = self._evict(scope, index, victims)

    def _evict(
        self,
        scope: TenantScope,
        index: list[SessionIndexEntry],
        victims: list[SessionIndexEntry],
    ) -> list[SessionIndexEntry]:
        if not victims:
            return index
        for entry in victims:
            scope.delete(session_key(entry.id))
        evicted = {e.id for e in victims}
        logger.warning(
            f"Evicted {len(victims)} oldest session(s) for tenant {scope.tenant_id}: {', '.join(sorted(evicted))}"
        )
        return [e for e in index if e.id not in evicted]
