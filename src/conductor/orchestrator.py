"""Task orchestrator: the round loop tying the engine together.

One round:
1. refuse the round if the recovery supervisor reports too many recent errors
2. auto-truncate the conversation to the model's budget
3. stream the model response through the StreamAssembler (retried as one action)
4. record the assistant entry, dispatch its invocations, record the tool results
5. ask the ReasoningController whether to run a follow-up round

Entries are appended to the conversation as soon as they are known, before
the next await. Cancellation is checked at every chunk and between batches;
in-flight invocations are allowed to finish.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from conductor.approval import ApprovalGate, PendingConfirmation, StaticSafetyPolicy
from conductor.builtins import build_registry
from conductor.capabilities import CapabilityRegistry
from conductor.config import ConductorConfig
from conductor.context_window import ContextWindowManager, ContextWindowProfile, Role
from conductor.dispatcher import CapabilityDispatcher, DispatchBatch
from conductor.errors import (
    CircuitOpenError,
    ConductorError,
    ProviderStreamError,
    TaskAlreadyRunningError,
    TaskCancelledError,
)
from conductor.events import (
    EVENT_BLOCK_UPDATE,
    EVENT_CONTEXT_TRUNCATED,
    EVENT_ERROR,
    EVENT_ROUND_START,
    EVENT_TASK_COMPLETE,
    EVENT_TASK_START,
    EventBus,
)
from conductor.memory import MemoryStore
from conductor.message_parser import ContentBlock
from conductor.providers import Provider, ProviderRequest, build_provider
from conductor.reasoning import ReasoningController, policy_by_name
from conductor.recovery import DEFAULT_RETRYABLE_ERRORS, ActionCategory, RecoverySupervisor, RetryPolicy
from conductor.stream_assembler import StreamAssembler

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_TEMPLATE = """You are a helpful assistant that can act on the user's machine.
To use a capability, write it inline in your reply:

<tool name="CAPABILITY"><param>value</param></tool>

Available capabilities:
{capabilities}

Use continue_reasoning when you need to see tool results before finishing."""


class TaskStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TaskResult:
    task_id: str
    status: TaskStatus
    output: str = ""
    rounds: int = 0
    error: str | None = None
    batches: list[DispatchBatch] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "output": self.output,
            "rounds": self.rounds,
            "error": self.error,
        }


def format_tool_results(batch: DispatchBatch) -> str:
    lines = ["[Tool results]"]
    for invocation, result in zip(batch.invocations, batch.results):
        lines.append(f"[{invocation.name}] {result}" if result else f"[{invocation.name}] (no output)")
    return "\n".join(lines)


def build_follow_up_prompt(request: str, batch: DispatchBatch) -> str:
    """Prompt for a continuation round from the prior response and its tool results."""
    return (
        f"Your previous response was:\n{batch.integrated_text}\n\n"
        f"{format_tool_results(batch)}\n\n"
        f"Continue working on the original request: {request}"
    )


def response_text(blocks: list[ContentBlock]) -> str:
    """Raw assistant text of a round, tool delimiters included."""
    return "\n".join(b.content for b in blocks if b.content)


class TaskOrchestrator:
    """Runs user requests through parse / dispatch / continue rounds."""

    def __init__(
        self,
        provider: Provider,
        registry: CapabilityRegistry,
        *,
        events: EventBus | None = None,
        gate: ApprovalGate | None = None,
        supervisor: RecoverySupervisor | None = None,
        reasoning: ReasoningController | None = None,
        context: ContextWindowManager | None = None,
        model_id: str | None = None,
        system_prompt: str | None = None,
        temperature: float = 0.0,
        error_threshold: int = 10,
        error_window: float = 300.0,
        on_block_update: Callable[[list[ContentBlock], int], Any] | None = None,
    ):
        self.provider = provider
        self.registry = registry
        self.events = events or EventBus()
        self.gate = gate or ApprovalGate(events=self.events)
        self.supervisor = supervisor or RecoverySupervisor()
        self.reasoning = reasoning or ReasoningController()
        self.context = context or ContextWindowManager(model_id or "default")
        self.model_id = model_id or self.context.model_id
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.error_threshold = error_threshold
        self.error_window = error_window
        self.on_block_update = on_block_update
        self.dispatcher = CapabilityDispatcher(registry, self.gate, self.supervisor, self.events)

        self._status = TaskStatus.IDLE
        self._task_id: str | None = None
        self._rounds = 0
        self._cancel = asyncio.Event()
        self._started_at = time.time()

    @classmethod
    def from_config(
        cls,
        config: ConductorConfig,
        *,
        provider: Provider | None = None,
        store: MemoryStore | None = None,
        events: EventBus | None = None,
        script: Path | None = None,
        on_block_update: Callable[[list[ContentBlock], int], Any] | None = None,
    ) -> TaskOrchestrator:
        """Wire every component from a ConductorConfig."""
        events = events or EventBus(memory=store)
        workspace = str(Path(config.tools.workspace).expanduser().resolve())
        gate = ApprovalGate(
            StaticSafetyPolicy.from_config(config.approval),
            events,
            auto_run=config.approval.auto_run,
            workspace=workspace,
        )
        supervisor = RecoverySupervisor(RetryPolicy(
            max_retries=config.retry.max_retries,
            base_delay=config.retry.base_delay,
            max_delay=config.retry.max_delay,
            backoff_multiplier=config.retry.backoff_multiplier,
            retryable_errors=tuple(config.retry.retryable_errors) or DEFAULT_RETRYABLE_ERRORS,
        ))
        profiles = {
            model_id: ContextWindowProfile(model_id, int(p["max_tokens"]), int(p.get("buffer_tokens", 0)))
            for model_id, p in config.context.profiles.items()
        }
        context = ContextWindowManager(config.provider.model, profiles, config.context.preserve_recent)
        return cls(
            provider or build_provider(config.provider, script),
            build_registry(config.tools, store),
            events=events,
            gate=gate,
            supervisor=supervisor,
            reasoning=ReasoningController(config.reasoning.max_iterations, policy_by_name(config.reasoning.policy)),
            context=context,
            model_id=config.provider.model,
            temperature=config.provider.temperature,
            on_block_update=on_block_update,
        )

    # --- public API ---

    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def task_id(self) -> str | None:
        return self._task_id

    def cancel(self) -> bool:
        """Request cancellation; takes effect at the next chunk or batch boundary."""
        if self._status != TaskStatus.RUNNING:
            return False
        self._cancel.set()
        declined = self.gate.cancel_all()
        logger.info(f"Cancellation requested for {self._task_id} ({declined} confirmation(s) declined)")
        return True

    def stop_reasoning(self) -> None:
        self.reasoning.request_stop()

    def approve(self, confirmation_id: str) -> bool:
        return self.gate.approve(confirmation_id)

    def reject(self, confirmation_id: str) -> bool:
        return self.gate.reject(confirmation_id)

    def pending_confirmations(self) -> list[PendingConfirmation]:
        return self.gate.pending()

    def get_status(self) -> dict:
        return {
            "status": self._status.value,
            "task_id": self._task_id,
            "rounds": self._rounds,
            "model_id": self.model_id,
            "pending": [p.to_dict() for p in self.gate.pending()],
            "reasoning": {"state": self.reasoning.state.value, "iteration": self.reasoning.iteration},
            "context": self.context.stats(self.model_id),
            "recent_errors": self.supervisor.error_stats()["total_errors"],
            "uptime": max(0.0, time.time() - self._started_at),
        }

    async def run(self, message: str) -> TaskResult:
        """Process one user request to completion, failure or cancellation."""
        if self._status == TaskStatus.RUNNING:
            raise TaskAlreadyRunningError(f"Task {self._task_id} is still running")

        task_id = f"task-{uuid.uuid4().hex[:8]}"
        self._task_id = task_id
        self._status = TaskStatus.RUNNING
        self._rounds = 0
        self._cancel.clear()
        self.reasoning.reset()
        self.gate.task_id = task_id

        self.context.add_entry(Role.USER, message, pinned=len(self.context) == 0)
        self.events.emit(EVENT_TASK_START, message[:200], task_id=task_id)
        logger.info(f"Task {task_id} started")

        result = TaskResult(task_id=task_id, status=TaskStatus.RUNNING)
        outputs: list[str] = []
        try:
            while True:
                self._check_cancelled()
                batch = await self._run_round(task_id)
                result.batches.append(batch)
                if batch.integrated_text:
                    outputs.append(batch.integrated_text)

                self._check_cancelled()
                decision = self.reasoning.should_continue(batch)
                if not decision.should_continue:
                    logger.debug(f"Task {task_id} not continuing: {decision.reason}")
                    break
                self.context.add_entry(Role.USER, build_follow_up_prompt(message, batch))
            result.status = TaskStatus.COMPLETED
        except TaskCancelledError:
            logger.info(f"Task {task_id} cancelled")
            self.gate.cancel_all()
            self.context.add_entry(Role.SYSTEM, "Task cancelled by user.")
            result.status = TaskStatus.CANCELLED
        except Exception as e:
            if not isinstance(e, ConductorError):
                logger.exception(f"Task {task_id} failed unexpectedly")
            error = self.supervisor.format_error_with_status(e)
            logger.error(f"Task {task_id} round {self._rounds} failed: {error}")
            self.context.add_entry(Role.SYSTEM, f"Error: {error}")
            result.error = error
            # A failed follow-up keeps what earlier rounds produced.
            result.status = TaskStatus.COMPLETED if outputs else TaskStatus.FAILED
            if not outputs:
                outputs.append(f"Error: {error}")
            self.events.emit(EVENT_ERROR, error[:200], task_id=task_id, metadata={"round": self._rounds})

        result.rounds = self._rounds
        result.output = "\n\n".join(outputs)
        self._status = result.status
        self.events.emit(
            EVENT_TASK_COMPLETE,
            f"{result.status.value}: {result.output[:160]}",
            task_id=task_id,
            metadata={"status": result.status.value, "rounds": result.rounds, "error": result.error},
        )
        logger.info(f"Task {task_id} finished: {result.status.value} after {result.rounds} round(s)")
        return result

    # --- rounds ---

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise TaskCancelledError("Task cancelled")

    async def _run_round(self, task_id: str) -> DispatchBatch:
        if self.supervisor.has_too_many_recent_errors(self.error_threshold, self.error_window):
            raise CircuitOpenError(
                f"Too many recent errors (>= {self.error_threshold} in {self.error_window:g}s); try again later"
            )
        self._rounds += 1
        self.events.emit(EVENT_ROUND_START, f"Round {self._rounds}", task_id=task_id, metadata={"round": self._rounds})

        truncation = self.context.auto_truncate(self.model_id)
        if truncation is not None:
            self.events.emit(
                EVENT_CONTEXT_TRUNCATED,
                f"Removed {truncation.tokens_removed} tokens",
                task_id=task_id,
                metadata={
                    "start": truncation.start,
                    "end": truncation.end,
                    "tokens_removed": truncation.tokens_removed,
                },
            )

        blocks = await self._stream_response(task_id)
        self.context.add_entry(Role.ASSISTANT, response_text(blocks))

        self._check_cancelled()
        batch = await self.dispatcher.dispatch(blocks, task_id=task_id)
        if batch.invocations:
            self.context.add_entry(Role.USER, format_tool_results(batch))
        return batch

    def _build_request(self) -> ProviderRequest:
        system = self.system_prompt
        if system is None:
            system = SYSTEM_PROMPT_TEMPLATE.format(capabilities=self.registry.describe() or "(none)")
        return ProviderRequest(
            messages=[{"role": e.role.value, "content": e.text} for e in self.context.entries],
            model=self.model_id,
            system=system,
            temperature=self.temperature,
        )

    async def _stream_response(self, task_id: str) -> list[ContentBlock]:
        request = self._build_request()

        async def attempt() -> list[ContentBlock]:
            assembler = StreamAssembler(on_update=self._block_observer(task_id))
            blocks = await assembler.consume(self.provider.stream(request), should_stop=self._cancel.is_set)
            if assembler.errors:
                raise ProviderStreamError(assembler.errors[-1])
            return blocks

        return await self.supervisor.execute(
            ActionCategory.MODEL_CALL.value,
            attempt,
            category=ActionCategory.MODEL_CALL,
            task_id=task_id,
        )

    def _block_observer(self, task_id: str) -> Callable[[list[ContentBlock], int], Any]:
        def observe(blocks: list[ContentBlock], index: int) -> Any:
            block = blocks[index]
            self.events.emit(
                EVENT_BLOCK_UPDATE,
                f"{block.kind.value} block {block.id}",
                task_id=task_id,
                metadata={"index": index, "kind": block.kind.value, "partial": block.partial,
                          "content": block.content[:500]},
            )
            if self.on_block_update is not None:
                return self.on_block_update(blocks, index)
            return None

        return observe
