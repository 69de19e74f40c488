"""Memory capabilities backed by the MemoryStore.

Memory records, user info (``user:<key>`` entries of the key/value cache) and
a todo list (the ``todos`` entry).
"""

from __future__ import annotations

import json
import logging

from conductor.capabilities import CapabilityRegistry
from conductor.errors import CapabilityError
from conductor.memory import MemoryStore

logger = logging.getLogger(__name__)

USER_PREFIX = "user:"
TODOS_KEY = "todos"


def _split_tags(raw: str | None) -> list[str]:
    return [t.strip() for t in (raw or "").split(",") if t.strip()]


def _parse_todos(raw: str) -> list[str]:
    """Accept a JSON list or one item per line (leading ``-`` / ``*`` removed)."""
    raw = raw.strip()
    if raw.startswith("["):
        try:
            items = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CapabilityError(f"Invalid todo JSON: {e}") from e
        return [str(i).strip() for i in items if str(i).strip()]
    return [line.strip().lstrip("-*").strip() for line in raw.splitlines() if line.strip().lstrip("-*").strip()]


class MemoryTools:
    def __init__(self, store: MemoryStore):
        self.store = store

    async def create_memory(self, params: dict) -> str:
        content = params.get("content", "")
        if not content.strip():
            raise CapabilityError("Missing required parameter 'content'")
        title = params.get("title") or content.strip().splitlines()[0][:60]
        memory = self.store.create_memory(title, content, _split_tags(params.get("tags")))
        return f"Created memory {memory.id}: {memory.title}"

    async def update_memory(self, params: dict) -> str:
        memory_id = params.get("id") or params.get("memory_id")
        if not memory_id:
            raise CapabilityError("Missing required parameter 'id'")
        changes = {}
        if "title" in params:
            changes["title"] = params["title"]
        if "content" in params:
            changes["content"] = params["content"]
        if "tags" in params:
            changes["tags"] = _split_tags(params["tags"])
        if not changes:
            raise CapabilityError("Nothing to update (title, content or tags)")
        memory = self.store.update_memory(memory_id, **changes)
        if memory is None:
            raise CapabilityError(f"Memory not found: {memory_id}")
        return f"Updated memory {memory.id}"

    async def delete_memory(self, params: dict) -> str:
        memory_id = params.get("id") or params.get("memory_id")
        if not memory_id:
            raise CapabilityError("Missing required parameter 'id'")
        if not self.store.delete_memory(memory_id):
            raise CapabilityError(f"Memory not found: {memory_id}")
        return f"Deleted memory {memory_id}"

    async def search_memories(self, params: dict) -> str:
        query = params.get("query", "").strip()
        try:
            limit = int(params.get("limit") or 10)
        except ValueError:
            raise CapabilityError(f"Invalid limit: {params.get('limit')!r}") from None
        memories = self.store.search_memories(query, limit=limit) if query else self.store.list_memories(limit)
        if not memories:
            return f"No memories matching {query!r}" if query else "No memories stored"
        lines = []
        for m in memories:
            tags = f" [{', '.join(m.tags)}]" if m.tags else ""
            lines.append(f"{m.id}: {m.title}{tags}\n{m.content}")
        return "\n\n".join(lines)

    async def save_user_info(self, params: dict) -> str:
        key = (params.get("key") or "").strip()
        if not key:
            raise CapabilityError("Missing required parameter 'key'")
        self.store.set(f"{USER_PREFIX}{key}", params.get("value", ""))
        return f"Saved user info: {key}"

    async def get_user_info(self, params: dict) -> str:
        key = (params.get("key") or "").strip()
        if key:
            value = self.store.get(f"{USER_PREFIX}{key}")
            return f"{key}: {value}" if value is not None else f"No user info for {key!r}"
        keys = self.store.keys(USER_PREFIX)
        if not keys:
            return "No user info saved"
        return "\n".join(f"{k[len(USER_PREFIX):]}: {self.store.get(k)}" for k in keys)

    async def todo_write(self, params: dict) -> str:
        todos = _parse_todos(params.get("todos", ""))
        self.store.set(TODOS_KEY, todos)
        return f"Saved {len(todos)} todo item(s)"

    async def todo_read(self, params: dict) -> str:
        todos = self.store.get(TODOS_KEY, [])
        if not todos:
            return "Todo list is empty"
        return "\n".join(f"{i}. {item}" for i, item in enumerate(todos, 1))

    def register(self, registry: CapabilityRegistry) -> None:
        registry.register("create_memory", self.create_memory, "Store a memory (title, content, tags)")
        registry.register("update_memory", self.update_memory, "Update a memory (id, title, content, tags)")
        registry.register("delete_memory", self.delete_memory, "Delete a memory (id)")
        registry.register("search_memories", self.search_memories, "Search memories (query, limit)")
        registry.register("save_user_info", self.save_user_info, "Remember a fact about the user (key, value)")
        registry.register("get_user_info", self.get_user_info, "Recall user facts (key optional)")
        registry.register("todo_write", self.todo_write, "Replace the todo list (todos)")
        registry.register("todo_read", self.todo_read, "Show the todo list")
