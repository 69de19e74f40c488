"""Capability dispatcher: runs a round's tool invocations and folds results into text.

Invocations are launched together (fan-out) and joined (fan-in). Each one is
isolated: an unknown name, a declined confirmation, or a raising handler
becomes that invocation's inline result and never affects its siblings.
Results come back in invocation order.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field

from conductor.approval import ApprovalGate
from conductor.capabilities import Capability, CapabilityRegistry
from conductor.errors import ConductorError, ErrorCode
from conductor.events import EVENT_TOOL_RESULT, EVENT_TOOL_USE, EventBus
from conductor.message_parser import BlockKind, ContentBlock, ToolInvocation
from conductor.outcomes import FatalError, Ok, Outcome, UserDeclined, is_error, render_outcome
from conductor.recovery import RecoverySupervisor

logger = logging.getLogger(__name__)


@dataclass
class DispatchBatch:
    """Everything one round's dispatch produced."""

    text_prefix: str = ""
    trailing_text: str = ""
    invocations: list[ToolInvocation] = field(default_factory=list)
    outcomes: list[Outcome] = field(default_factory=list)
    integrated_text: str = ""

    @property
    def results(self) -> list[str]:
        return [render_outcome(o) for o in self.outcomes]

    @property
    def text(self) -> str:
        return "\n".join(t for t in (self.text_prefix, self.trailing_text) if t)

    @property
    def error_count(self) -> int:
        return sum(1 for o in self.outcomes if is_error(o))

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "invocations": [{"name": i.name, "params": i.params} for i in self.invocations],
            "results": self.results,
            "integrated_text": self.integrated_text,
        }


def partition_blocks(blocks: list[ContentBlock]) -> tuple[str, str, list[ToolInvocation]]:
    """Split blocks into (text before first tool, text after it, invocations)."""
    prefix: list[str] = []
    trailing: list[str] = []
    invocations: list[ToolInvocation] = []
    for block in blocks:
        if block.kind == BlockKind.TOOL_USE:
            if block.invocation is not None:
                invocations.append(block.invocation)
            continue
        if block.content:
            (trailing if invocations else prefix).append(block.content)
    return "\n".join(prefix), "\n".join(trailing), invocations


def integrate_results(text_prefix: str, trailing_text: str, results: list[str]) -> str:
    """Combine a round's text with its tool results.

    Empty results are dropped; the rest are separated by blank lines and
    follow the prefix text after a blank line. Text that came after the
    first invocation is appended after a single newline.
    """
    if not results:
        return "\n".join(t for t in (text_prefix, trailing_text) if t)
    body = "\n\n".join(r for r in results if r)
    if text_prefix and body:
        out = f"{text_prefix}\n\n{body}"
    else:
        out = text_prefix or body
    if trailing_text:
        out = f"{out}\n{trailing_text}" if out else trailing_text
    return out


class CapabilityDispatcher:
    """Maps tool_use blocks to registered handlers and runs them concurrently."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        gate: ApprovalGate | None = None,
        supervisor: RecoverySupervisor | None = None,
        events: EventBus | None = None,
    ):
        self.registry = registry
        self.gate = gate
        self.supervisor = supervisor or RecoverySupervisor()
        self._events = events

    async def dispatch(self, blocks: list[ContentBlock], task_id: str | None = None) -> DispatchBatch:
        text_prefix, trailing_text, invocations = partition_blocks(blocks)
        batch = DispatchBatch(text_prefix=text_prefix, trailing_text=trailing_text, invocations=invocations)
        if not invocations:
            batch.integrated_text = integrate_results(text_prefix, trailing_text, [])
            return batch

        logger.info(f"Dispatching {len(invocations)} invocation(s): {[i.name for i in invocations]}")
        gathered = await asyncio.gather(
            *(self.invoke(invocation, task_id=task_id) for invocation in invocations),
            return_exceptions=True,
        )
        outcomes: list[Outcome] = []
        for invocation, item in zip(invocations, gathered):
            if isinstance(item, BaseException):
                logger.error(f"Invocation {invocation.name} escaped isolation: {item!r}")
                outcomes.append(FatalError(str(item) or type(item).__name__))
            else:
                outcomes.append(item)

        batch.outcomes = outcomes
        batch.integrated_text = integrate_results(text_prefix, trailing_text, batch.results)
        if batch.error_count:
            logger.info(f"Batch finished with {batch.error_count} failed invocation(s)")
        return batch

    async def invoke(self, invocation: ToolInvocation, task_id: str | None = None) -> Outcome:
        """Run one invocation end to end. Never raises except on cancellation."""
        try:
            return await self._invoke(invocation, task_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected failure dispatching {invocation.name}")
            return FatalError(str(e) or type(e).__name__, code=ErrorCode.INTERNAL_UNEXPECTED.value)

    async def _invoke(self, invocation: ToolInvocation, task_id: str | None) -> Outcome:
        if invocation.partial:
            return FatalError(
                f"invocation of {invocation.name} was cut off before completion",
                code=ErrorCode.CAPABILITY_FAILED.value,
            )
        try:
            capability = self.registry.resolve(invocation.name)
        except ConductorError as e:
            logger.warning(str(e))
            return FatalError(str(e), code=e.code.value)

        if self.gate is not None and self.gate.requires_approval(invocation.name):
            approved = await self.gate.confirm(invocation)
            if not approved:
                logger.info(f"{invocation.name} declined by user")
                return UserDeclined(f"{invocation.name} was not approved")

        self._emit(EVENT_TOOL_USE, f"{invocation.name}", task_id, {"name": invocation.name, "params": invocation.params})
        outcome = await self.supervisor.run(
            f"tool:{invocation.name}",
            lambda: self._call(capability, invocation.params),
            category=capability.category,
            tool_name=invocation.name,
            task_id=task_id,
        )
        self._emit(
            EVENT_TOOL_RESULT,
            f"{invocation.name}: {'ok' if isinstance(outcome, Ok) else 'failed'}",
            task_id,
            {"name": invocation.name, "result": render_outcome(outcome)[:2000]},
        )
        return outcome

    @staticmethod
    async def _call(capability: Capability, params: dict[str, str]) -> str:
        result = capability.handler(dict(params))
        if inspect.isawaitable(result):
            result = await result
        if result is None:
            return ""
        return result if isinstance(result, str) else str(result)

    def _emit(self, event_type: str, summary: str, task_id: str | None, metadata: dict) -> None:
        if self._events is not None:
            self._events.emit(event_type, summary, task_id=task_id, metadata=metadata)
