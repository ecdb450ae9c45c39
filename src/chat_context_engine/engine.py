from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from chat_context_engine.errors import StorageError
from chat_context_engine.models import ChatMessage, ChatSession, TokenBudgetSnapshot
from chat_context_engine.storage.autosave import AutoSaveScheduler
from chat_context_engine.storage.repository import KeyValueRepository
from chat_context_engine.storage.session_store import SessionStore
from chat_context_engine.storage.share_manager import ShareManager
from chat_context_engine.streaming import DEFAULT_COMPLETION_TIMEOUT_SECONDS, CompletionClient, CompletionStream
from chat_context_engine.summarization import (
    DEFAULT_RECENT_MESSAGE_COUNT,
    SummarizationTrigger,
    build_context_window,
    sanitize_messages,
)
from chat_context_engine.tokenizer import TokenEstimator
from chat_context_engine.trimming import MessageTrimmer, TrimTier


@dataclass(frozen=True)
class PreparedContext:
    messages: list[ChatMessage]
    budget: TokenBudgetSnapshot
    overflow: bool
    tier: TrimTier


class ChatContextEngine:
    """Front door for a chat client: budgeting, summaries, persistence and sharing."""

    def __init__(
        self,
        estimator: TokenEstimator,
        trimmer: MessageTrimmer,
        trigger: SummarizationTrigger,
        store: SessionStore,
        scheduler: AutoSaveScheduler,
        shares: ShareManager,
        *,
        recent_message_count: int = DEFAULT_RECENT_MESSAGE_COUNT,
        completion_timeout_seconds: float = DEFAULT_COMPLETION_TIMEOUT_SECONDS,
        repositories: list[KeyValueRepository] | None = None,
    ):
        self.estimator = estimator
        self.trimmer = trimmer
        self.trigger = trigger
        self.store = store
        self.scheduler = scheduler
        self.shares = shares
        self._recent_message_count = recent_message_count
        self._completion_timeout_seconds = completion_timeout_seconds
        self._repositories = repositories or []
        self._latest: dict[str, list[ChatMessage]] = {}

    @property
    def read_only(self) -> bool:
        return self.trigger.read_only

    def _set_read_only(self, value: bool) -> None:
        self.trigger.read_only = value
        self.scheduler.read_only = value

    # --- context -----------------------------------------------------------

    def prepare_context(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> PreparedContext:
        """Build the payload for the next model call, fitted to ``max_tokens``."""
        summary = self.trigger.current_summary
        if summary:
            view = build_context_window(system_prompt, messages, summary, self._recent_message_count)
        else:
            view = sanitize_messages([ChatMessage.system(system_prompt), *messages])

        result = self.trimmer.trim_detailed(view, tools, max_tokens)
        return PreparedContext(
            messages=result.messages,
            budget=self.estimator.get_token_budget(result.messages),
            overflow=result.overflow,
            tier=result.tier,
        )

    def budget(self, messages: list[ChatMessage]) -> TokenBudgetSnapshot:
        return self.estimator.get_token_budget(messages)

    # --- sessions ----------------------------------------------------------

    def new_session(self, tenant_id: str, messages: list[ChatMessage] | None = None) -> ChatSession:
        self._set_read_only(False)
        self.trigger.reset()
        session = self.store.create(tenant_id, list(messages or []))
        self.store.set_active(tenant_id, session.id)
        return session

    def load_session(self, tenant_id: str, session_id: str) -> ChatSession:
        session = self.store.get(tenant_id, session_id)
        if session is None:
            raise StorageError.not_found("Session", session_id)
        self._set_read_only(False)
        self.trigger.restore(session.summary)
        self.store.set_active(tenant_id, session_id)
        logger.info(f"Loaded session {session_id} ({session.message_count} messages)")
        return session

    def open_shared(self, tenant_id: str, share_id: str) -> ChatSession:
        """Open a share link. Saving and summarizing stay off until another session is opened."""
        session = self.shares.resolve(tenant_id, share_id)
        self._set_read_only(True)
        self.trigger.restore(session.summary)
        logger.info(f"Opened shared session {session.id} read-only")
        return session

    async def record_turn(self, tenant_id: str, session_id: str, messages: list[ChatMessage]) -> None:
        """Schedule the save and, when due, a background summary. Returns without waiting for either."""
        if self.read_only:
            return
        snapshot = list(messages)
        self.scheduler.schedule(tenant_id, session_id, snapshot, summary=self.trigger.current_summary)
        # Only tracked while a summary is in flight for the session.
        if session_id in self._latest:
            self._latest[session_id] = snapshot
        task = self.trigger.maybe_summarize(snapshot)
        if task is not None:
            self._latest[session_id] = snapshot
            task.add_done_callback(self._save_summary_callback(tenant_id, session_id))

    def _save_summary_callback(
        self,
        tenant_id: str,
        session_id: str,
    ) -> Callable[[asyncio.Task], None]:
        def on_done(task: asyncio.Task) -> None:
            latest = self._latest.pop(session_id, None)
            if task.cancelled() or task.exception() is not None or task.result() is None:
                return
            if self.read_only:
                return
            # Save against the newest history, not the one the summary started from.
            if latest:
                self.scheduler.schedule(tenant_id, session_id, latest, summary=task.result())

        return on_done

    async def complete(
        self,
        client: CompletionClient,
        tenant_id: str,
        session_id: str,
        system_prompt: str,
        messages: list[ChatMessage],
        *,
        tools: list[dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
        max_tokens: int | None = None,
        on_delta: Callable[[str], None] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatMessage:
        """Stream one assistant reply for ``messages`` and record the turn.

        Setting ``cancel_event`` stops the reply early; whatever arrived by then is kept.
        """
        prepared = self.prepare_context(system_prompt, messages, tools, max_tokens)
        if prepared.overflow:
            logger.warning("Sending a context that exceeds the token budget")
        stream = CompletionStream(client, self._completion_timeout_seconds)
        watcher = None
        if cancel_event is not None:
            watcher = asyncio.create_task(_cancel_when_set(cancel_event, stream))
        try:
            reply = await stream.run(prepared.messages, tools, options, on_delta)
        finally:
            if watcher is not None:
                watcher.cancel()

        history = list(messages)
        if reply.text:
            history.append(reply)
        await self.record_turn(tenant_id, session_id, history)
        return reply

    async def close(self) -> None:
        await self.trigger.wait()
        await self.scheduler.flush()
        for repository in self._repositories:
            close = getattr(repository, "close", None)
            if close is not None:
                close()


async def _cancel_when_set(event: asyncio.Event, stream: CompletionStream) -> None:
    await event.wait()
    stream.cancel()
