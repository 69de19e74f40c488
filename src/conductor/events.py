"""Event bus: the engine's outbound event sink.

Events go to registered listeners and, when a MemoryStore is attached, to
its timeline table.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from conductor.memory import MemoryStore

logger = logging.getLogger(__name__)

# Standard event types
EVENT_TASK_START = "task_start"
EVENT_TASK_COMPLETE = "task_complete"
EVENT_ROUND_START = "round_start"
EVENT_BLOCK_UPDATE = "block_update"
EVENT_TOOL_USE = "tool_use"
EVENT_TOOL_RESULT = "tool_result"
EVENT_APPROVAL_NEEDED = "approval_needed"
EVENT_APPROVAL_RESOLVED = "approval_resolved"
EVENT_CONTEXT_TRUNCATED = "context_truncated"
EVENT_ERROR = "error"

EVENT_TYPES = frozenset({
    EVENT_TASK_START,
    EVENT_TASK_COMPLETE,
    EVENT_ROUND_START,
    EVENT_BLOCK_UPDATE,
    EVENT_TOOL_USE,
    EVENT_TOOL_RESULT,
    EVENT_APPROVAL_NEEDED,
    EVENT_APPROVAL_RESOLVED,
    EVENT_CONTEXT_TRUNCATED,
    EVENT_ERROR,
})

# Chatty events that are delivered to listeners but not written to the timeline.
_UNPERSISTED = frozenset({EVENT_BLOCK_UPDATE})


class EventBus:
    """Notifies listeners of engine events and optionally persists them."""

    def __init__(self, memory: MemoryStore | None = None, session_id: str | None = None, history_size: int = 200):
        self._memory = memory
        self._session_id = session_id
        self._listeners: list[Callable[[dict], Any]] = []
        self._recent: deque[dict] = deque(maxlen=history_size)

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @session_id.setter
    def session_id(self, value: str):
        self._session_id = value

    def emit(
        self,
        event_type: str,
        summary: str,
        *,
        task_id: str | None = None,
        metadata: dict | None = None,
    ) -> dict:
        """Emit an event: persist it (if a store is attached) and notify all listeners."""
        if event_type not in EVENT_TYPES:
            logger.debug(f"Emitting non-standard event type {event_type}")

        event_id = None
        if self._memory is not None and event_type not in _UNPERSISTED:
            try:
                event_id = self._memory.record_event(
                    event_type=event_type,
                    summary=summary,
                    session_id=self._session_id,
                    task_id=task_id,
                    metadata=metadata,
                )
            except Exception as e:
                logger.warning(f"Failed to persist {event_type} event: {e}")

        event_data = {
            "id": event_id,
            "timestamp": time.time(),
            "event_type": event_type,
            "summary": summary,
            "session_id": self._session_id,
            "task_id": task_id,
            "metadata": metadata,
        }
        self._recent.append(event_data)

        for listener in list(self._listeners):
            try:
                listener(event_data)
            except Exception as e:
                logger.warning(f"Event listener error: {e}")

        return event_data

    def add_listener(self, callback: Callable[[dict], Any]) -> None:
        """Register a listener for all events."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable) -> None:
        """Remove a registered listener."""
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def recent(self, limit: int = 50, event_type: str | None = None) -> list[dict]:
        """Most recent events held in memory, oldest first."""
        events = [e for e in self._recent if event_type is None or e["event_type"] == event_type]
        return events[-limit:]
