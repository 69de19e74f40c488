"""Approval gate: interactive confirmation for risky capability invocations.

Each gate owns its own pending-confirmation table keyed by correlation id,
so two orchestrators never collide. A confirmation request emits an
``approval_needed`` event carrying ``{id, command, directory, description}``
and returns a future that settles when approve(id) or reject(id) is called.
In auto-run mode the event is still emitted but the future is already
resolved to True and nothing is registered.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Protocol

from conductor.events import EVENT_APPROVAL_NEEDED, EVENT_APPROVAL_RESOLVED, EventBus
from conductor.message_parser import ToolInvocation

if TYPE_CHECKING:
    from conductor.config import ApprovalConfig

logger = logging.getLogger(__name__)

READ_CAPABILITIES = frozenset({"read_file", "search_files", "search_memories", "get_user_info", "todo_read"})
LIST_CAPABILITIES = frozenset({"list_files"})
DANGEROUS_CAPABILITIES = frozenset({"write_to_file", "replace_in_file", "execute_command", "web_fetch"})
NEVER_CONFIRM = frozenset({"ask_followup_question", "continue_reasoning"})


class SafetyPolicy(Protocol):
    """Decides per tool name whether confirmation is needed.

    Returning None means the tool is not recognized by the policy.
    """

    def requires_approval(self, tool_name: str) -> bool | None: ...


class StaticSafetyPolicy:
    """Name-keyed policy driven by the approval config flags."""

    def __init__(
        self,
        auto_approve_read: bool = True,
        auto_approve_list: bool = True,
        confirm_dangerous: bool = True,
    ):
        self.auto_approve_read = auto_approve_read
        self.auto_approve_list = auto_approve_list
        self.confirm_dangerous = confirm_dangerous

    @classmethod
    def from_config(cls, config: ApprovalConfig) -> StaticSafetyPolicy:
        return cls(
            auto_approve_read=config.auto_approve_read,
            auto_approve_list=config.auto_approve_list,
            confirm_dangerous=config.confirm_dangerous,
        )

    def requires_approval(self, tool_name: str) -> bool | None:
        if tool_name in NEVER_CONFIRM:
            return False
        if tool_name in READ_CAPABILITIES:
            return not self.auto_approve_read
        if tool_name in LIST_CAPABILITIES:
            return not self.auto_approve_list
        if tool_name in DANGEROUS_CAPABILITIES:
            return self.confirm_dangerous
        return None


@dataclass
class PendingConfirmation:
    """One outstanding confirmation. The future settles at most once."""

    id: str
    command: str
    directory: str
    description: str
    created_at: float
    future: asyncio.Future = field(repr=False)
    tool_name: str | None = None

    def resolve(self, approved: bool) -> bool:
        if self.future.done():
            return False
        self.future.set_result(approved)
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "command": self.command,
            "directory": self.directory,
            "description": self.description,
            "created_at": self.created_at,
            "tool_name": self.tool_name,
        }


def describe_invocation(invocation: ToolInvocation) -> str:
    """``"<name>: k=v, ..."`` summary shown to the user."""
    if not invocation.params:
        return invocation.name
    params = ", ".join(f"{k}={v}" for k, v in invocation.params.items())
    return f"{invocation.name}: {params}"


class ApprovalGate:
    """Per-orchestrator confirmation handshake."""

    def __init__(
        self,
        policy: SafetyPolicy | None = None,
        events: EventBus | None = None,
        auto_run: bool = False,
        workspace: str = ".",
        clock: Callable[[], float] = time.time,
    ):
        self.policy = policy
        self.auto_run = auto_run
        self.workspace = workspace
        self._events = events
        self._clock = clock
        self._prefix = uuid.uuid4().hex[:8]
        self._counter = 0
        self._pending: dict[str, PendingConfirmation] = {}
        self.task_id: str | None = None

    def requires_approval(self, tool_name: str) -> bool:
        """Consult the policy; absent policy, unknown tool or policy failure means True."""
        if self.policy is None:
            return True
        try:
            decision = self.policy.requires_approval(tool_name)
        except Exception as e:
            logger.warning(f"Safety policy failed for {tool_name}, requiring approval: {e}")
            return True
        if decision is None:
            return True
        return bool(decision)

    def _next_id(self) -> str:
        self._counter += 1
        return f"confirm-{self._prefix}-{self._counter}"

    def request_confirmation(
        self,
        command: str,
        cwd: str | None = None,
        description: str = "",
        tool_name: str | None = None,
    ) -> PendingConfirmation:
        """Register a confirmation (unless auto-run) and emit approval_needed."""
        loop = asyncio.get_running_loop()
        pending = PendingConfirmation(
            id=self._next_id(),
            command=command,
            directory=cwd or self.workspace,
            description=description or command,
            created_at=self._clock(),
            future=loop.create_future(),
            tool_name=tool_name,
        )
        if self.auto_run:
            pending.future.set_result(True)
        else:
            self._pending[pending.id] = pending

        self._emit(
            EVENT_APPROVAL_NEEDED,
            f"Confirmation needed: {pending.description[:120]}",
            {**pending.to_dict(), "auto_run": self.auto_run},
        )
        if self.auto_run:
            logger.info(f"Auto-run approved {pending.id}: {pending.description[:120]}")
        return pending

    async def confirm(self, invocation: ToolInvocation) -> bool:
        """Request confirmation for an invocation and wait for the answer."""
        description = describe_invocation(invocation)
        pending = self.request_confirmation(
            command=invocation.params.get("command") or description,
            cwd=invocation.params.get("cwd"),
            description=description,
            tool_name=invocation.name,
        )
        try:
            return await pending.future
        finally:
            self._pending.pop(pending.id, None)

    def approve(self, confirmation_id: str) -> bool:
        return self._resolve(confirmation_id, True)

    def reject(self, confirmation_id: str) -> bool:
        return self._resolve(confirmation_id, False)

    def _resolve(self, confirmation_id: str, approved: bool) -> bool:
        pending = self._pending.pop(confirmation_id, None)
        if pending is None:
            logger.debug(f"No live confirmation {confirmation_id}")
            return False
        if not pending.resolve(approved):
            return False
        verdict = "approved" if approved else "rejected"
        logger.info(f"Confirmation {confirmation_id} {verdict}")
        self._emit(
            EVENT_APPROVAL_RESOLVED,
            f"Confirmation {verdict}: {pending.description[:120]}",
            {"id": confirmation_id, "approved": approved},
        )
        return True

    def pending(self) -> list[PendingConfirmation]:
        return list(self._pending.values())

    def cancel_all(self) -> int:
        """Reject every outstanding confirmation. Returns how many were live."""
        count = 0
        for confirmation_id in list(self._pending):
            if self.reject(confirmation_id):
                count += 1
        return count

    def _emit(self, event_type: str, summary: str, metadata: dict) -> None:
        if self._events is not None:
            self._events.emit(event_type, summary, task_id=self.task_id, metadata=metadata)
