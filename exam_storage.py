"""
Session answer cache for in-progress exam attempts.

One entry per exam, keyed 'exam_answers_<examId>', holding the full answer
mapping and the time it was saved. Entries older than 24h are treated as
absent and evicted on read. Every operation is best-effort: storage failures
are logged and swallowed because the live session is the source of truth.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

from exam_status import now_ms

STORAGE_KEY_PREFIX = "exam_answers_"
EXPIRY_HOURS = 24
EXPIRY_MS = EXPIRY_HOURS * 60 * 60 * 1000


def storage_key(exam_id: str) -> str:
    return f"{STORAGE_KEY_PREFIX}{exam_id}"


# -----------------------------------------------------------------------------
# Key/value surfaces: get_item(key) -> str|None, set_item(key, text), remove_item(key)
# -----------------------------------------------------------------------------
class MemoryStorage:
    def __init__(self):
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


def _safe_name(text: str) -> str:
    """Reversible, collision-free file name for an arbitrary key."""
    return quote(text, safe="")


class FileStorage:
    """One UTF-8 file per key under root."""

    def __init__(self, root):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / (_safe_name(key) + ".json")

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as fh:
            return fh.read()

    def set_item(self, key: str, value: str) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            fh.write(value)
        tmp.replace(path)

    def remove_item(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()


class PostgresStorage:
    """
    Rows in public.exam_answer_cache, scoped by owner (the candidate id).
    deps: fetch_one(sql, params), execute(sql, params)
    """

    _table_ready = False

    def __init__(self, fetch_one: Callable, execute: Callable, owner: Any):
        self.fetch_one = fetch_one
        self.execute = execute
        self.owner = str(owner)

    def _ensure_table(self):
        if PostgresStorage._table_ready:
            return
        self.execute("""
            CREATE TABLE IF NOT EXISTS public.exam_answer_cache (
                owner       TEXT NOT NULL,
                cache_key   TEXT NOT NULL,
                value       TEXT NOT NULL,
                updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
                PRIMARY KEY (owner, cache_key)
            );
        """, ())
        PostgresStorage._table_ready = True

    def get_item(self, key: str) -> Optional[str]:
        self._ensure_table()
        row = self.fetch_one("""
            SELECT value FROM public.exam_answer_cache
             WHERE owner = %s AND cache_key = %s;
        """, (self.owner, key))
        return (row or {}).get("value")

    def set_item(self, key: str, value: str) -> None:
        self._ensure_table()
        self.execute("""
            INSERT INTO public.exam_answer_cache (owner, cache_key, value, updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (owner, cache_key)
            DO UPDATE SET value = EXCLUDED.value, updated_at = now();
        """, (self.owner, key, value))

    def remove_item(self, key: str) -> None:
        self._ensure_table()
        self.execute("""
            DELETE FROM public.exam_answer_cache
             WHERE owner = %s AND cache_key = %s;
        """, (self.owner, key))


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------
class SessionAnswerStore:
    def __init__(self, storage, clock: Callable[[], int] = now_ms):
        self.storage = storage
        self.clock = clock

    def save(self, exam_id: str, answers: Dict[str, Any]) -> None:
        """Overwrite the entry with the complete mapping (last write wins)."""
        key = storage_key(exam_id)
        try:
            data = {"answers": {str(k): v for k, v in (answers or {}).items()},
                    "savedAt": int(self.clock())}
            self.storage.set_item(key, json.dumps(data, ensure_ascii=False))
        except Exception as e:
            print(f"[exam_storage] save failed for {key}: {e}")

    def load(self, exam_id: str) -> Optional[Dict[str, Any]]:
        """Saved mapping, or None when absent, expired or unreadable."""
        key = storage_key(exam_id)
        try:
            raw = self.storage.get_item(key)
        except Exception as e:
            print(f"[exam_storage] read failed for {key}: {e}")
            return None
        if not raw:
            return None

        try:
            parsed = json.loads(raw)
        except ValueError as e:
            print(f"[exam_storage] unreadable entry {key}: {e}")
            return None
        if not isinstance(parsed, dict):
            return None
        answers = parsed.get("answers")
        saved_at = parsed.get("savedAt")
        if not isinstance(answers, dict) or isinstance(saved_at, bool) or not isinstance(saved_at, (int, float)):
            return None

        if self.clock() - saved_at > EXPIRY_MS:
            self.clear(exam_id)
            return None
        return dict(answers)

    def clear(self, exam_id: str) -> None:
        try:
            self.storage.remove_item(storage_key(exam_id))
        except Exception as e:
            print(f"[exam_storage] clear failed for {storage_key(exam_id)}: {e}")


def answer_store_factory(kind: str, fetch_one: Optional[Callable] = None,
                         execute: Optional[Callable] = None, root=None,
                         clock: Callable[[], int] = now_ms) -> Callable[[Any], SessionAnswerStore]:
    """
    Returns owner -> SessionAnswerStore, one isolated key space per candidate.
    kind: 'postgres' | 'file' | 'memory'
    """
    kind = (kind or "memory").strip().lower()
    if kind == "postgres":
        if fetch_one is None or execute is None:
            raise ValueError("postgres answer storage needs fetch_one and execute")
        return lambda owner: SessionAnswerStore(PostgresStorage(fetch_one, execute, owner), clock)
    if kind == "file":
        if not root:
            raise ValueError("file answer storage needs a root directory")
        base = Path(root)
        return lambda owner: SessionAnswerStore(
            FileStorage(base / ("owner_" + _safe_name(str(owner)))), clock)
    if kind == "memory":
        spaces: Dict[str, MemoryStorage] = {}

        def _for(owner):
            return SessionAnswerStore(spaces.setdefault(str(owner), MemoryStorage()), clock)
        return _for
    raise ValueError(f"unknown answer storage: {kind}")


__all__ = [
    "STORAGE_KEY_PREFIX", "EXPIRY_HOURS", "EXPIRY_MS", "storage_key",
    "MemoryStorage", "FileStorage", "PostgresStorage", "SessionAnswerStore",
    "answer_store_factory",
]
