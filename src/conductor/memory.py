"""Memory layer: SQLite persistence for the engine and its memory capabilities.

- key/value cache (JSON values) with get / set / append
- memory records the model can create, update, delete and search
- timeline events written by the EventBus
"""

import json
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.config import CONDUCTOR_DB

_MEMORY_COLUMNS = frozenset({"title", "content", "tags"})


@dataclass
class Memory:
    """A stored memory record."""

    id: str
    title: str
    content: str
    created_at: float
    updated_at: float
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "tags": self.tags,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _row_to_memory(row) -> Memory:
    return Memory(
        id=row[0],
        title=row[1],
        content=row[2],
        tags=json.loads(row[3]) if row[3] else [],
        created_at=row[4],
        updated_at=row[5],
    )


class MemoryStore:
    """SQLite-backed persistent memory."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = Path(db_path or CONDUCTOR_DB)
        self._init_db()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS kv_cache (
                key TEXT PRIMARY KEY,
                value_json TEXT,
                updated_at REAL
            );

            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                title TEXT,
                content TEXT,
                tags_json TEXT,
                created_at REAL,
                updated_at REAL
            );

            CREATE TABLE IF NOT EXISTS timeline_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL,
                event_type TEXT,
                summary TEXT,
                session_id TEXT,
                task_id TEXT,
                metadata_json TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_timeline_ts ON timeline_events(timestamp);
            CREATE INDEX IF NOT EXISTS idx_timeline_type ON timeline_events(event_type);
            CREATE INDEX IF NOT EXISTS idx_memories_updated ON memories(updated_at);
        """)
        conn.commit()
        conn.close()

    # --- Key/value cache ---

    def get(self, key: str, default: Any = None) -> Any:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute("SELECT value_json FROM kv_cache WHERE key = ?", (key,)).fetchone()
        conn.close()
        if not row:
            return default
        return json.loads(row[0])

    def set(self, key: str, value: Any) -> None:
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "INSERT OR REPLACE INTO kv_cache (key, value_json, updated_at) VALUES (?, ?, ?)",
            (key, json.dumps(value), time.time()),
        )
        conn.commit()
        conn.close()

    def append(self, key: str, item: Any) -> list:
        """Append to the list stored at ``key`` (created if missing). Returns the new list."""
        current = self.get(key, [])
        if not isinstance(current, list):
            current = [current]
        current.append(item)
        self.set(key, current)
        return current

    def delete(self, key: str) -> bool:
        conn = sqlite3.connect(self.db_path)
        cursor = conn.execute("DELETE FROM kv_cache WHERE key = ?", (key,))
        conn.commit()
        conn.close()
        return cursor.rowcount > 0

    def keys(self, prefix: str = "") -> list[str]:
        conn = sqlite3.connect(self.db_path)
        rows = conn.execute(
            "SELECT key FROM kv_cache WHERE key LIKE ? ORDER BY key",
            (f"{prefix}%",),
        ).fetchall()
        conn.close()
        return [r[0] for r in rows]

    # --- Memory records ---

    def create_memory(self, title: str, content: str, tags: list[str] | None = None) -> Memory:
        now = time.time()
        memory = Memory(
            id=f"mem-{uuid.uuid4().hex[:12]}",
            title=title,
            content=content,
            tags=list(tags or []),
            created_at=now,
            updated_at=now,
        )
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "INSERT INTO memories (id, title, content, tags_json, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (memory.id, memory.title, memory.content, json.dumps(memory.tags), now, now),
        )
        conn.commit()
        conn.close()
        return memory

    def get_memory(self, memory_id: str) -> Memory | None:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute(
            "SELECT id, title, content, tags_json, created_at, updated_at FROM memories WHERE id = ?",
            (memory_id,),
        ).fetchone()
        conn.close()
        if not row:
            return None
        return _row_to_memory(row)

    def update_memory(self, memory_id: str, **kwargs) -> Memory | None:
        """Update title/content/tags of a memory. Returns None if it does not exist."""
        invalid = set(kwargs) - _MEMORY_COLUMNS
        if invalid:
            raise ValueError(f"Invalid memory columns: {sorted(invalid)}")
        if "tags" in kwargs:
            kwargs["tags_json"] = json.dumps(list(kwargs.pop("tags") or []))
        kwargs["updated_at"] = time.time()
        sets = ", ".join(f"{k} = ?" for k in kwargs)
        values = list(kwargs.values()) + [memory_id]
        conn = sqlite3.connect(self.db_path)
        cursor = conn.execute(f"UPDATE memories SET {sets} WHERE id = ?", values)
        conn.commit()
        conn.close()
        if cursor.rowcount == 0:
            return None
        return self.get_memory(memory_id)

    def delete_memory(self, memory_id: str) -> bool:
        conn = sqlite3.connect(self.db_path)
        cursor = conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        conn.commit()
        conn.close()
        return cursor.rowcount > 0

    def search_memories(self, query: str, limit: int = 10) -> list[Memory]:
        """Case-insensitive substring search over title, content and tags."""
        like = f"%{query.lower()}%"
        conn = sqlite3.connect(self.db_path)
        rows = conn.execute(
            "SELECT id, title, content, tags_json, created_at, updated_at FROM memories "
            "WHERE lower(title) LIKE ? OR lower(content) LIKE ? OR lower(tags_json) LIKE ? "
            "ORDER BY updated_at DESC LIMIT ?",
            (like, like, like, limit),
        ).fetchall()
        conn.close()
        return [_row_to_memory(r) for r in rows]

    def list_memories(self, limit: int = 50) -> list[Memory]:
        conn = sqlite3.connect(self.db_path)
        rows = conn.execute(
            "SELECT id, title, content, tags_json, created_at, updated_at FROM memories "
            "ORDER BY updated_at DESC LIMIT ?",
            (limit,),
        ).fetchall()
        conn.close()
        return [_row_to_memory(r) for r in rows]

    # --- Timeline events ---

    def record_event(
        self,
        event_type: str,
        summary: str,
        session_id: str | None = None,
        task_id: str | None = None,
        metadata: dict | None = None,
    ) -> int:
        """Record a timeline event. Returns the event ID."""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.execute(
            "INSERT INTO timeline_events "
            "(timestamp, event_type, summary, session_id, task_id, metadata_json) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (time.time(), event_type, summary, session_id, task_id,
             json.dumps(metadata, default=str) if metadata else None),
        )
        event_id = cursor.lastrowid
        conn.commit()
        conn.close()
        return event_id

    def get_timeline(
        self,
        session_id: str | None = None,
        limit: int = 50,
        event_type: str | None = None,
        task_id: str | None = None,
    ) -> list[dict]:
        """Query timeline events with optional filters, newest first."""
        conn = sqlite3.connect(self.db_path)
        query = (
            "SELECT id, timestamp, event_type, summary, session_id, task_id, metadata_json "
            "FROM timeline_events WHERE 1=1"
        )
        params: list = []
        if session_id:
            query += " AND session_id = ?"
            params.append(session_id)
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        if task_id:
            query += " AND task_id = ?"
            params.append(task_id)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [
            {
                "id": r[0], "timestamp": r[1], "event_type": r[2], "summary": r[3],
                "session_id": r[4], "task_id": r[5],
                "metadata": json.loads(r[6]) if r[6] else None,
            }
            for r in rows
        ]
