"""Reasoning controller: decides whether a dispatch batch earns another round.

State machine IDLE -> ACTIVE -> (IDLE | STOPPED), bounded by an iteration cap
and an external stop flag. What makes a batch "worth continuing" is a
pluggable predicate; the default never continues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable

from conductor.outcomes import Ok

if TYPE_CHECKING:
    from conductor.dispatcher import DispatchBatch

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 3

ContinuationPredicate = Callable[["DispatchBatch"], bool]


class ReasoningState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ContinuationDecision:
    should_continue: bool
    reason: str
    iteration: int


def never_continue(batch: DispatchBatch) -> bool:
    return False


def continue_when_requested(batch: DispatchBatch) -> bool:
    """Continue when the batch ran a ``continue_reasoning`` invocation successfully."""
    return any(
        invocation.name == "continue_reasoning" and isinstance(outcome, Ok)
        for invocation, outcome in zip(batch.invocations, batch.outcomes)
    )


POLICIES: dict[str, ContinuationPredicate] = {
    "never": never_continue,
    "on_request": continue_when_requested,
}


def policy_by_name(name: str) -> ContinuationPredicate:
    try:
        return POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown reasoning policy: {name} (expected one of {sorted(POLICIES)})") from None


class ReasoningController:
    def __init__(self, max_iterations: int = DEFAULT_MAX_ITERATIONS, predicate: ContinuationPredicate = never_continue):
        if max_iterations < 0:
            raise ValueError("max_iterations must be >= 0")
        self.max_iterations = max_iterations
        self.predicate = predicate
        self.state = ReasoningState.IDLE
        self.iteration = 0
        self._stop_requested = False

    def request_stop(self) -> None:
        """External stop signal; takes effect at the next decision."""
        self._stop_requested = True
        logger.info("Reasoning stop requested")

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def reset(self) -> None:
        self.state = ReasoningState.IDLE
        self.iteration = 0
        self._stop_requested = False

    def should_continue(self, batch: DispatchBatch) -> ContinuationDecision:
        self.state = ReasoningState.ACTIVE

        if self._stop_requested:
            self.state = ReasoningState.STOPPED
            self.iteration = 0
            return ContinuationDecision(False, "stopped", 0)

        if self.iteration >= self.max_iterations:
            logger.info(f"Reasoning cap of {self.max_iterations} reached")
            self.state = ReasoningState.IDLE
            self.iteration = 0
            return ContinuationDecision(False, "iteration cap reached", 0)

        try:
            wants_more = bool(self.predicate(batch))
        except Exception as e:
            logger.warning(f"Continuation predicate failed, not continuing: {e}")
            wants_more = False

        if wants_more:
            self.iteration += 1
            logger.debug(f"Continuing reasoning (iteration {self.iteration}/{self.max_iterations})")
            return ContinuationDecision(True, "predicate requested another round", self.iteration)

        self.state = ReasoningState.IDLE
        self.iteration = 0
        return ContinuationDecision(False, "predicate declined", 0)
