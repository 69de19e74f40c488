"""Capability registry: the fixed, versioned set of tool names and their handlers.

A handler has the uniform signature ``(params: dict[str, str]) -> str`` (sync or
async) and either returns its result text or raises. Names are validated at
registration time against CAPABILITY_NAMES; lookups of names outside the set
fail at dispatch time with UnknownCapabilityError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Union

from conductor.errors import (
    CapabilityRegistrationError,
    CapabilityUnavailableError,
    UnknownCapabilityError,
)
from conductor.recovery import ActionCategory

logger = logging.getLogger(__name__)

CAPABILITY_SET_VERSION = "1"

CAPABILITY_NAMES: frozenset[str] = frozenset({
    # Files
    "read_file",
    "write_to_file",
    "replace_in_file",
    "list_files",
    "search_files",
    # System
    "execute_command",
    # Web
    "web_fetch",
    "web_search",
    # Memory
    "create_memory",
    "update_memory",
    "delete_memory",
    "search_memories",
    "save_user_info",
    "get_user_info",
    "todo_write",
    "todo_read",
    # Conversation control
    "ask_followup_question",
    "continue_reasoning",
    # External tool servers
    "use_mcp_tool",
    "access_mcp_resource",
})

_CATEGORY_BY_NAME: dict[str, ActionCategory] = {
    "read_file": ActionCategory.FILE_OPERATION,
    "write_to_file": ActionCategory.FILE_OPERATION,
    "replace_in_file": ActionCategory.FILE_OPERATION,
    "list_files": ActionCategory.FILE_OPERATION,
    "search_files": ActionCategory.FILE_OPERATION,
    "execute_command": ActionCategory.COMMAND_EXECUTION,
}

CapabilityHandler = Callable[[dict[str, str]], Union[str, Awaitable[str]]]


@dataclass(frozen=True)
class Capability:
    """A registered handler plus the metadata the dispatcher needs."""

    name: str
    handler: CapabilityHandler
    description: str = ""
    category: ActionCategory = ActionCategory.TOOL_EXECUTION


def category_for(name: str) -> ActionCategory:
    """Recovery category used when wrapping a call to this capability."""
    return _CATEGORY_BY_NAME.get(name, ActionCategory.TOOL_EXECUTION)


class CapabilityRegistry:
    """Maps capability names to handlers."""

    def __init__(self, allowed: Iterable[str] = CAPABILITY_NAMES):
        self._allowed = frozenset(allowed)
        self._capabilities: dict[str, Capability] = {}

    @property
    def allowed(self) -> frozenset[str]:
        return self._allowed

    def register(
        self,
        name: str,
        handler: CapabilityHandler,
        description: str = "",
        category: ActionCategory | None = None,
    ) -> Capability:
        """Register a handler. Raises CapabilityRegistrationError for names outside the set."""
        if name not in self._allowed:
            raise CapabilityRegistrationError(
                f"Cannot register '{name}': not in capability set v{CAPABILITY_SET_VERSION}",
                capability=name,
            )
        if not callable(handler):
            raise CapabilityRegistrationError(f"Handler for '{name}' is not callable", capability=name)
        if name in self._capabilities:
            logger.warning(f"Replacing handler for capability {name}")
        capability = Capability(
            name=name,
            handler=handler,
            description=description,
            category=category or category_for(name),
        )
        self._capabilities[name] = capability
        return capability

    def capability(self, name: str, description: str = "") -> Callable[[CapabilityHandler], CapabilityHandler]:
        """Decorator form of register()."""

        def decorator(fn: CapabilityHandler) -> CapabilityHandler:
            self.register(name, fn, description=description)
            return fn

        return decorator

    def unregister(self, name: str) -> None:
        self._capabilities.pop(name, None)

    def get(self, name: str) -> Capability | None:
        return self._capabilities.get(name)

    def resolve(self, name: str) -> Capability:
        """Look up a handler for dispatch.

        Raises UnknownCapabilityError when the name is outside the set and
        CapabilityUnavailableError when it is known but unregistered.
        """
        if name not in self._allowed:
            raise UnknownCapabilityError(name)
        capability = self._capabilities.get(name)
        if capability is None:
            raise CapabilityUnavailableError(name)
        return capability

    def names(self) -> list[str]:
        return sorted(self._capabilities)

    def describe(self) -> str:
        """One line per registered capability, for prompts and the CLI."""
        lines = []
        for name in self.names():
            desc = self._capabilities[name].description
            lines.append(f"- {name}: {desc}" if desc else f"- {name}")
        return "\n".join(lines)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)
