from __future__ import annotations

import json
import re
import secrets
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from loguru import logger

from chat_context_engine.errors import (
    ShareExpired,
    ShareForbidden,
    ShareNotFound,
    ShareRateLimitExceeded,
    ShareRevoked,
    StorageError,
)
from chat_context_engine.models import ChatSession, ExpiryConfig, ShareRecord, utc_now
from chat_context_engine.storage.repository import KeyValueRepository
from chat_context_engine.storage.session_store import SessionStore

SHARE_KEY_PREFIX = "chat-context-share:"
SESSION_SHARES_KEY_PREFIX = "chat-context-session-shares:"
DEFAULT_SHARE_BASE_PATH = "/share"
DEFAULT_RATE_LIMIT_PER_HOUR = 10

# 32 random bytes in URL-safe base64 without padding.
_SHARE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{43}$")


class ShareStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    NOT_FOUND = "not_found"


def generate_share_id() -> str:
    return secrets.token_urlsafe(32)


def is_valid_share_id(share_id: str) -> bool:
    return bool(share_id) and _SHARE_ID_PATTERN.match(share_id) is not None


def build_share_path(share_id: str, base_path: str = DEFAULT_SHARE_BASE_PATH) -> str:
    return f"{base_path.rstrip('/')}/{share_id}"


class ShareManager:
    """Read-only snapshots of sessions addressed by unguessable share ids.

    Records live in ``backend``, a repository standing in for the remote
    share service. Each record carries the session snapshot taken at share
    time, so later edits to the source session are not visible through it.
    """

    def __init__(
        self,
        store: SessionStore,
        backend: KeyValueRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
        rate_limit_per_hour: int = DEFAULT_RATE_LIMIT_PER_HOUR,
        base_path: str = DEFAULT_SHARE_BASE_PATH,
    ):
        self._store = store
        self._backend = backend
        self._clock = clock
        self._rate_limit_per_hour = rate_limit_per_hour
        self._base_path = base_path
        self._recent_creates: dict[str, deque[datetime]] = {}

    def create_share(self, tenant_id: str, session_id: str, expiry: ExpiryConfig) -> ShareRecord:
        session = self._store.get(tenant_id, session_id)
        if session is None:
            raise StorageError.not_found("Session", session_id)
        self._check_rate_limit(tenant_id)

        now = self._clock()
        record = ShareRecord(
            share_id=generate_share_id(),
            session_id=session_id,
            tenant_id=tenant_id,
            created_at=now,
            expires_at=expiry.expires_at(now),
        )
        with self._backend.transaction():
            self._write_record(record, session)
            share_ids = self._session_share_ids(session_id)
            share_ids.append(record.share_id)
            self._backend.set(SESSION_SHARES_KEY_PREFIX + session_id, json.dumps(share_ids))

        self._recent_creates.setdefault(tenant_id, deque()).append(now)
        logger.info(f"Created share for session {session_id} (expiry: {expiry.key()})")
        return record

    def list_shares(self, tenant_id: str, session_id: str) -> list[ShareRecord]:
        now = self._clock()
        records = []
        for share_id in self._session_share_ids(session_id):
            loaded = self._load(share_id)
            if loaded is None:
                continue
            record, _ = loaded
            if record.tenant_id != tenant_id:
                continue
            if record.is_active(now):
                records.append(record)
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def revoke(self, tenant_id: str, share_id: str) -> ShareRecord:
        """Revoke a share. Only the tenant that created it may do so."""
        loaded = self._load(share_id) if is_valid_share_id(share_id) else None
        if loaded is None:
            raise ShareNotFound(share_id)
        record, snapshot = loaded
        if record.tenant_id != tenant_id:
            logger.warning(f"Tenant {tenant_id} tried to revoke a share owned by {record.tenant_id}")
            raise ShareForbidden(share_id, tenant_id)
        if record.revoked:
            return record
        revoked = ShareRecord(
            share_id=record.share_id,
            session_id=record.session_id,
            tenant_id=record.tenant_id,
            created_at=record.created_at,
            expires_at=record.expires_at,
            revoked=True,
        )
        self._backend.set(SHARE_KEY_PREFIX + share_id, self._serialize(revoked, snapshot))
        logger.info(f"Revoked share for session {record.session_id}")
        return revoked

    def resolve(self, tenant_id: str, share_id: str) -> ChatSession:
        """Snapshot behind ``share_id``. Shares are visible only inside the owning tenant."""
        loaded = self._load_for_tenant(tenant_id, share_id)
        if loaded is None:
            raise ShareNotFound(share_id)
        record, snapshot = loaded
        if record.revoked:
            raise ShareRevoked(share_id)
        if record.is_expired(self._clock()):
            raise ShareExpired(share_id)
        snapshot.read_only = True
        return snapshot

    def status(self, tenant_id: str, share_id: str) -> ShareStatus:
        loaded = self._load_for_tenant(tenant_id, share_id)
        if loaded is None:
            return ShareStatus.NOT_FOUND
        record, _ = loaded
        if record.revoked:
            return ShareStatus.REVOKED
        if record.is_expired(self._clock()):
            return ShareStatus.EXPIRED
        return ShareStatus.ACTIVE

    def import_shared(self, tenant_id: str, share_id: str) -> ChatSession:
        """Copy a shared snapshot into ``tenant_id`` as a new, editable session."""
        snapshot = self.resolve(tenant_id, share_id)
        session = self._store.create(
            tenant_id,
            snapshot.messages,
            title=snapshot.title,
            summary=snapshot.summary,
        )
        logger.info(f"Imported shared session {snapshot.id} as {session.id}")
        return session

    def cleanup_expired(self) -> int:
        now = self._clock()
        removed = 0
        with self._backend.transaction():
            for key in self._backend.list_keys(SHARE_KEY_PREFIX):
                share_id = key[len(SHARE_KEY_PREFIX):]
                loaded = self._load(share_id)
                if loaded is None or not loaded[0].is_expired(now):
                    continue
                record = loaded[0]
                self._backend.delete(key)
                remaining = [s for s in self._session_share_ids(record.session_id) if s != share_id]
                list_key = SESSION_SHARES_KEY_PREFIX + record.session_id
                if remaining:
                    self._backend.set(list_key, json.dumps(remaining))
                else:
                    self._backend.delete(list_key)
                removed += 1
        if removed:
            logger.info(f"Removed {removed} expired share(s)")
        return removed

    def share_path(self, share_id: str) -> str:
        return build_share_path(share_id, self._base_path)

    # --- internals ---------------------------------------------------------

    def _check_rate_limit(self, tenant_id: str) -> None:
        if self._rate_limit_per_hour <= 0:
            return
        window_start = self._clock() - timedelta(hours=1)
        recent = self._recent_creates.setdefault(tenant_id, deque())
        while recent and recent[0] <= window_start:
            recent.popleft()
        if len(recent) >= self._rate_limit_per_hour:
            logger.warning(f"Share rate limit reached for tenant {tenant_id}")
            raise ShareRateLimitExceeded(tenant_id, self._rate_limit_per_hour)

    def _session_share_ids(self, session_id: str) -> list[str]:
        raw = self._backend.get(SESSION_SHARES_KEY_PREFIX + session_id)
        if not raw:
            return []
        try:
            return [str(s) for s in json.loads(raw)]
        except ValueError as ex:
            raise StorageError.invalid_data(f"Failed to parse share list for session {session_id}", ex) from ex

    def _serialize(self, record: ShareRecord, snapshot: ChatSession) -> str:
        return json.dumps(
            {"record": record.to_dict(), "session": snapshot.to_dict()},
            ensure_ascii=False,
            separators=(",", ":"),
        )

    def _write_record(self, record: ShareRecord, snapshot: ChatSession) -> None:
        self._backend.set(SHARE_KEY_PREFIX + record.share_id, self._serialize(record, snapshot))

    def _load_for_tenant(self, tenant_id: str, share_id: str) -> tuple[ShareRecord, ChatSession] | None:
        loaded = self._load(share_id) if is_valid_share_id(share_id) else None
        if loaded is None or loaded[0].tenant_id != tenant_id:
            return None
        return loaded

    def _load(self, share_id: str) -> tuple[ShareRecord, ChatSession] | None:
        raw = self._backend.get(SHARE_KEY_PREFIX + share_id)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return ShareRecord.from_dict(data["record"]), ChatSession.from_dict(data["session"])
        except (ValueError, KeyError, TypeError) as ex:
            raise StorageError.invalid_data(f"Failed to parse share {share_id}", ex) from ex
