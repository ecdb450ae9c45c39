from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import ContextManager, Protocol, runtime_checkable
from urllib.parse import quote

from loguru import logger

from chat_context_engine.errors import StorageError

DEFAULT_NAMESPACE = "chat-context"


def entry_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


@runtime_checkable
class KeyValueRepository(Protocol):
    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...
    def list_keys(self, prefix: str = "") -> list[str]: ...
    def transaction(self) -> ContextManager[None]: ...


class InMemoryRepository:
    """Dict-backed repository. ``capacity_bytes`` mimics a browser storage quota."""

    def __init__(self, capacity_bytes: int | None = None):
        self._data: dict[str, str] = {}
        self._capacity_bytes = capacity_bytes
        self._depth = 0

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._capacity_bytes is not None:
            current = self._data.get(key)
            used = self.total_bytes() - (entry_size(key, current) if current is not None else 0)
            if used + entry_size(key, value) > self._capacity_bytes:
                raise StorageError.quota_exceeded()
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def list_keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    def total_bytes(self) -> int:
        return sum(entry_size(k, v) for k, v in self._data.items())

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._depth > 0:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        snapshot = dict(self._data)
        self._depth = 1
        try:
            yield
        except BaseException:
            self._data = snapshot
            raise
        finally:
            self._depth = 0


class SqliteRepository:
    def __init__(self, db_path: str, capacity_bytes: int | None = None):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._capacity_bytes = capacity_bytes
        self._depth = 0
        self._initialize_schema()

    def close(self) -> None:
        self._conn.close()

    def get(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM kv WHERE key = ? LIMIT 1", (key,)).fetchone()
        return None if row is None else str(row["value"])

    def set(self, key: str, value: str) -> None:
        if self._capacity_bytes is not None:
            row = self._conn.execute(
                """
                SELECT COALESCE(SUM(length(CAST(key AS BLOB)) + length(CAST(value AS BLOB))), 0) AS used
                FROM kv
                WHERE key != ?
                """,
                (key,),
            ).fetchone()
            if int(row["used"]) + entry_size(key, value) > self._capacity_bytes:
                raise StorageError.quota_exceeded()
        self._conn.execute(
            """
            INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, datetime.now(UTC).isoformat(timespec="seconds")),
        )
        self._commit_if_autocommit()

    def delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        self._commit_if_autocommit()

    def list_keys(self, prefix: str = "") -> list[str]:
        rows = self._conn.execute(
            "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key ASC",
            (len(prefix), prefix),
        ).fetchall()
        return [str(row["key"]) for row in rows]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        self._depth += 1
        try:
            yield
        except BaseException:
            if self._depth == 1:
                self._conn.rollback()
            raise
        else:
            if self._depth == 1:
                self._conn.commit()
        finally:
            self._depth -= 1

    def _commit_if_autocommit(self) -> None:
        if self._depth == 0:
            self._conn.commit()

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )
        self._conn.commit()
        logger.debug("Key-value schema ready")


class TenantScope:
    """A repository view restricted to one tenant's namespaced keys."""

    def __init__(self, repository: KeyValueRepository, tenant_id: str, namespace: str = DEFAULT_NAMESPACE):
        if not tenant_id:
            raise ValueError("tenant_id is required")
        self._repository = repository
        self._tenant_id = tenant_id
        # Quoting keeps ':' out of the tenant segment, so prefixes cannot collide.
        self._prefix = f"{namespace}:{quote(tenant_id, safe='')}:"

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def prefix(self) -> str:
        return self._prefix

    def full_key(self, key: str) -> str:
        return self._prefix + key

    def get(self, key: str) -> str | None:
        return self._repository.get(self.full_key(key))

    def set(self, key: str, value: str) -> None:
        self._repository.set(self.full_key(key), value)

    def delete(self, key: str) -> None:
        self._repository.delete(self.full_key(key))

    def list_keys(self, prefix: str = "") -> list[str]:
        full = self._repository.list_keys(self._prefix + prefix)
        return [k[len(self._prefix):] for k in full]

    def size_of(self, key: str, value: str | None) -> int:
        if value is None:
            return 0
        return entry_size(self.full_key(key), value)

    def used_bytes(self) -> int:
        total = 0
        for key in self.list_keys():
            total += self.size_of(key, self.get(key))
        return total
