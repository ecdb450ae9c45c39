"""Export and import of single sessions as self-describing JSON documents."""

from __future__ import annotations

import json
from typing import Any

from loguru import logger

from chat_context_engine.errors import StorageError
from chat_context_engine.models import ChatSession, to_iso, utc_now
from chat_context_engine.storage.session_store import SessionStore

EXPORT_FORMAT = "chat-context-session"
EXPORT_VERSION = 1


def export_session(store: SessionStore, tenant_id: str, session_id: str) -> str:
    session = store.get(tenant_id, session_id)
    if session is None:
        raise StorageError.not_found("Session", session_id)
    document: dict[str, Any] = {
        "format": EXPORT_FORMAT,
        "version": EXPORT_VERSION,
        "exportedAt": to_iso(utc_now()),
        "session": session.to_dict(),
    }
    logger.info(f"Exported session {session_id} ({session.message_count} messages)")
    return json.dumps(document, ensure_ascii=False, indent=2)


def parse_export(payload: str) -> ChatSession:
    try:
        document = json.loads(payload)
    except ValueError as ex:
        raise StorageError.invalid_data("Export is not valid JSON", ex) from ex

    if not isinstance(document, dict) or document.get("format") != EXPORT_FORMAT:
        raise StorageError.invalid_data("Not a chat session export")
    version = document.get("version")
    if version != EXPORT_VERSION:
        raise StorageError.invalid_data(f"Unsupported export version: {version!r}")

    try:
        return ChatSession.from_dict(document["session"])
    except (KeyError, TypeError, ValueError) as ex:
        raise StorageError.invalid_data("Export contains a malformed session", ex) from ex


def import_session(store: SessionStore, tenant_id: str, payload: str, *, keep_id: bool = False) -> ChatSession:
    """Store an exported session under ``tenant_id``.

    A fresh session id is assigned unless ``keep_id`` is set, in which case an
    existing session with the same id is overwritten.
    """
    exported = parse_export(payload)
    if keep_id:
        session = store.update(
            tenant_id,
            exported.id,
            exported.messages,
            summary=exported.summary,
            title=exported.title,
        )
    else:
        session = store.create(
            tenant_id,
            exported.messages,
            title=exported.title,
            summary=exported.summary,
        )
    logger.info(f"Imported session {exported.id} as {session.id}")
    return session
