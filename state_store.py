"""
Key-value state store for per-learner transient state.

Holds in-progress exam sessions and AI tutor chat history, keyed by a
session key such as ``exam_session:<user_id>:<exam_id>``. PgStateStore keeps
them in a ``kv_state`` table (JSONB values) reached through the same
fetch_one/execute/transaction helpers the rest of the app uses.

``locked(key)`` serializes read-modify-write cycles on one key: callers
holding the slot see every earlier writer's value, and their own write
commits together with the lock release.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator

import psycopg
from psycopg.types.json import Jsonb

from errors import DependencyError

logger = logging.getLogger(__name__)

KV_STATE_DDL = """
CREATE TABLE IF NOT EXISTS kv_state (
    key        text PRIMARY KEY,
    value      jsonb NOT NULL,
    updated_at timestamptz NOT NULL DEFAULT now()
);
"""

_UPSERT = """
    INSERT INTO kv_state (key, value, updated_at)
    VALUES (%s, %s, now())
    ON CONFLICT (key) DO UPDATE
       SET value = EXCLUDED.value, updated_at = now();
"""


class StateSlot:
    """One key's value while its lock is held."""

    def __init__(self, key: str, value: Any, write: Callable[[Any], None]):
        self.key = key
        self.value = value
        self._write = write

    def set(self, value: Any) -> None:
        self._write(value)
        self.value = value


class PgStateStore:
    def __init__(self, fetch_one: Callable, execute: Callable, transaction: Callable):
        self._fetch_one = fetch_one
        self._execute = execute
        self._transaction = transaction

    def get(self, key: str, default: Any = None) -> Any:
        try:
            row = self._fetch_one("SELECT value FROM kv_state WHERE key = %s;", (key,))
        except psycopg.Error as e:
            logger.exception("state read failed for %s", key)
            raise DependencyError("Could not load saved state.") from e
        if not row:
            return default
        return row.get("value")

    def set(self, key: str, value: Any) -> None:
        try:
            self._execute(_UPSERT, (key, Jsonb(value)))
        except psycopg.Error as e:
            logger.exception("state write failed for %s", key)
            raise DependencyError("Could not save state.") from e

    def delete(self, key: str) -> None:
        try:
            self._execute("DELETE FROM kv_state WHERE key = %s;", (key,))
        except psycopg.Error as e:
            logger.exception("state delete failed for %s", key)
            raise DependencyError("Could not clear state.") from e

    @contextmanager
    def locked(self, key: str) -> Iterator[StateSlot]:
        """
        Transaction-scoped advisory lock on `key`. The slot's writes go through
        the same transaction; leaving the block with an exception rolls them back.
        """
        try:
            with self._transaction() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s));", (key,))
                cur.execute("SELECT value FROM kv_state WHERE key = %s;", (key,))
                row = cur.fetchone()
                yield StateSlot(key, row["value"] if row else None,
                                lambda value: cur.execute(_UPSERT, (key, Jsonb(value))))
        except psycopg.Error as e:
            logger.exception("locked state update failed for %s", key)
            raise DependencyError("Could not save state.") from e


def exam_session_key(user_id: str, exam_id: str) -> str:
    return f"exam_session:{user_id}:{exam_id}"


def tutor_history_key(user_id: str) -> str:
    return f"tutor_history:{user_id}"


__all__ = [
    "KV_STATE_DDL", "PgStateStore", "StateSlot",
    "exam_session_key", "tutor_history_key",
]
