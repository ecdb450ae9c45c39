from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from loguru import logger
from tenacity import AsyncRetrying, retry_if_not_exception_type, stop_after_attempt

from chat_context_engine.errors import PersistenceWriteFailure, StorageQuotaExceeded
from chat_context_engine.models import ChatMessage, ChatSession
from chat_context_engine.storage.session_store import SessionStore

DEFAULT_SAVE_DELAY_SECONDS = 2.0
DEFAULT_INDEX_REFRESH_DELAY_SECONDS = 10.0


class SaveState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    SAVING = "saving"


@dataclass(frozen=True)
class _PendingSave:
    tenant_id: str
    messages: list[ChatMessage]
    summary: str | None


class AutoSaveScheduler:
    """Debounced persistence of session bodies.

    A burst of ``schedule`` calls for one session produces a single write of
    the latest messages once the session has been quiet for ``delay_seconds``.
    Index listeners are notified on a longer, separate debounce.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        delay_seconds: float = DEFAULT_SAVE_DELAY_SECONDS,
        index_delay_seconds: float = DEFAULT_INDEX_REFRESH_DELAY_SECONDS,
        on_saved: Callable[[str], None] | None = None,
        on_error: Callable[[str, Exception], None] | None = None,
    ):
        self._store = store
        self._delay_seconds = delay_seconds
        self._index_delay_seconds = index_delay_seconds
        self._on_saved = on_saved
        self._on_error = on_error
        self._pending: dict[str, _PendingSave] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._index_timers: dict[str, asyncio.Task] = {}
        self._states: dict[str, SaveState] = {}
        self._read_only = False
        self.last_error: Exception | None = None

    @property
    def read_only(self) -> bool:
        return self._read_only

    @read_only.setter
    def read_only(self, value: bool) -> None:
        self._read_only = value
        if value:
            for session_id in list(self._timers):
                self.cancel(session_id)

    def state(self, session_id: str) -> SaveState:
        return self._states.get(session_id, SaveState.IDLE)

    def has_pending(self, session_id: str | None = None) -> bool:
        if session_id is None:
            return bool(self._pending)
        return session_id in self._pending

    def schedule(
        self,
        tenant_id: str,
        session_id: str,
        messages: list[ChatMessage],
        summary: str | None = None,
    ) -> None:
        if self._read_only:
            logger.debug(f"Autosave skipped for {session_id}: read-only")
            return
        if not messages:
            return

        self._cancel_timer(session_id)
        self._pending[session_id] = _PendingSave(tenant_id, list(messages), summary)
        self._timers[session_id] = asyncio.create_task(self._save_after_delay(session_id))
        if self.state(session_id) != SaveState.SAVING:
            self._states[session_id] = SaveState.SCHEDULED

    async def save_immediately(
        self,
        tenant_id: str,
        session_id: str,
        messages: list[ChatMessage],
        summary: str | None = None,
    ) -> ChatSession | None:
        """Write now, bypassing the debounce. Does nothing while read-only."""
        if self._read_only:
            logger.debug(f"Immediate save skipped for {session_id}: read-only")
            return None
        self._cancel_timer(session_id)
        self._pending.pop(session_id, None)
        return await self._persist(tenant_id, session_id, list(messages), summary)

    def cancel(self, session_id: str) -> None:
        self._cancel_timer(session_id)
        self._pending.pop(session_id, None)
        if self.state(session_id) == SaveState.SCHEDULED:
            self._states.pop(session_id, None)

    async def flush(self) -> None:
        """Write every pending save now and stop the index timers. Used on shutdown."""
        for session_id in list(self._pending):
            self._cancel_timer(session_id)
            pending = self._pending.pop(session_id)
            try:
                await self._persist(pending.tenant_id, session_id, pending.messages, pending.summary)
            except PersistenceWriteFailure:
                continue
        for task in self._index_timers.values():
            task.cancel()
        self._index_timers.clear()

    # --- internals ---------------------------------------------------------

    def _cancel_timer(self, session_id: str) -> None:
        task = self._timers.pop(session_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _save_after_delay(self, session_id: str) -> None:
        await asyncio.sleep(self._delay_seconds)
        if self._timers.get(session_id) is asyncio.current_task():
            self._timers.pop(session_id, None)
        pending = self._pending.pop(session_id, None)
        if pending is None:
            return
        try:
            await self._persist(pending.tenant_id, session_id, pending.messages, pending.summary)
        except PersistenceWriteFailure:
            # Already logged and reported through on_error.
            pass

    async def _persist(
        self,
        tenant_id: str,
        session_id: str,
        messages: list[ChatMessage],
        summary: str | None,
    ) -> ChatSession:
        self._states[session_id] = SaveState.SAVING
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(2),
                retry=retry_if_not_exception_type(StorageQuotaExceeded),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(f"Retrying save of session {session_id}")
                    session = self._store.update(tenant_id, session_id, messages, summary=summary)
        except Exception as ex:
            self.last_error = ex
            logger.error(f"Failed to save session {session_id}: {ex}")
            if self._on_error is not None:
                self._on_error(session_id, ex)
            raise PersistenceWriteFailure(session_id, ex) from ex
        finally:
            if session_id in self._pending:
                self._states[session_id] = SaveState.SCHEDULED
            else:
                self._states.pop(session_id, None)

        self.last_error = None
        logger.debug(f"Autosaved session {session_id} ({len(messages)} messages)")
        self._schedule_index_refresh(tenant_id)
        return session

    def _schedule_index_refresh(self, tenant_id: str) -> None:
        if self._on_saved is None:
            return
        previous = self._index_timers.pop(tenant_id, None)
        if previous is not None:
            previous.cancel()
        self._index_timers[tenant_id] = asyncio.create_task(self._refresh_index_after_delay(tenant_id))

    async def _refresh_index_after_delay(self, tenant_id: str) -> None:
        await asyncio.sleep(self._index_delay_seconds)
        if self._index_timers.get(tenant_id) is asyncio.current_task():
            self._index_timers.pop(tenant_id, None)
        self._on_saved(tenant_id)
