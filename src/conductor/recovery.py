"""Retry/recovery supervisor for externally caused actions.

Wraps a model call or a capability call with:
- retryable-error classification (case-insensitive substring match of the
  error message and type name against the policy's signatures)
- capped exponential backoff: min(base * multiplier**attempt, max_delay)
- category-specific, best-effort cleanup once a failure is surfaced
- a rolling failure history for per-action retry counts and a
  "too many errors in a window" circuit-breaker check

execute() re-raises the final error; run() returns a tagged Outcome instead.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from conductor.errors import ConductorError, ErrorCode, TaskCancelledError
from conductor.outcomes import FatalError, Ok, Outcome, RetryableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_ERRORS: tuple[str, ...] = (
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "ConnectionReset",
    "ConnectError",
    "timeout",
    "timed out",
    "rate_limit_exceeded",
    "rate limit",
    "too many requests",
    "service_unavailable",
    "internal_server_error",
    "bad_gateway",
    "gateway_timeout",
)

_FATAL_CODES = frozenset({
    ErrorCode.CONFIG_INVALID,
    ErrorCode.CAPABILITY_UNKNOWN,
    ErrorCode.CAPABILITY_UNAVAILABLE,
    ErrorCode.CAPABILITY_REGISTRATION,
    ErrorCode.CAPABILITY_FAILED,
    ErrorCode.PROVIDER_AUTH,
    ErrorCode.TASK_CANCELLED,
})

_HTTP_STATUS_TEXT = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    408: "Request Timeout",
    429: "Too Many Requests",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}

_STATUS_RE = re.compile(r"status(?:[ _]?code)?:?\s*(\d{3})", re.IGNORECASE)

RETRY_COUNT_WINDOW_SECONDS = 60.0


class ActionCategory(str, Enum):
    """Cleanup categories. Values double as default action names."""

    MODEL_CALL = "api_request"
    TOOL_EXECUTION = "tool_execution"
    FILE_OPERATION = "file_operation"
    COMMAND_EXECUTION = "command_execution"
    GENERIC = "generic"


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_errors: tuple[str, ...] = DEFAULT_RETRYABLE_ERRORS

    def delay_for(self, attempt: int) -> float:
        """Backoff before retrying after the given zero-based attempt."""
        return min(self.base_delay * (self.backoff_multiplier ** attempt), self.max_delay)


@dataclass
class ErrorRecord:
    """One observed failure."""

    action: str
    category: ActionCategory
    error_type: str
    message: str
    attempt: int
    timestamp: float
    tool_name: str | None = None
    task_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def signature(self) -> str:
        return f"{self.error_type}: {self.message}"

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "category": self.category.value,
            "error_type": self.error_type,
            "message": self.message,
            "attempt": self.attempt,
            "timestamp": self.timestamp,
            "tool_name": self.tool_name,
            "task_id": self.task_id,
        }


@dataclass(frozen=True)
class RecoveryResult:
    success: bool
    message: str
    should_retry: bool
    cleanup_performed: bool


CleanupHook = Callable[[ErrorRecord], "Awaitable[None] | None"]


class _Surfaced(Exception):
    """Carries a surfaced failure out of the retry loop with its attempt count."""

    def __init__(self, error: BaseException, attempts: int, result: RecoveryResult):
        super().__init__(str(error))
        self.error = error
        self.attempts = attempts
        self.result = result


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class RecoverySupervisor:
    """Retry loop plus failure bookkeeping shared by the orchestrator and dispatcher."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        on_error: Callable[[ErrorRecord], Any] | None = None,
        on_recovery: Callable[[RecoveryResult], Any] | None = None,
        history_limit: int = 500,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock
        self._on_error = on_error
        self._on_recovery = on_recovery
        self._history: list[ErrorRecord] = []
        self._history_limit = history_limit
        self._cleanup_hooks: dict[ActionCategory, list[CleanupHook]] = {
            ActionCategory.MODEL_CALL: [self._cleanup_model_call],
            ActionCategory.TOOL_EXECUTION: [self._cleanup_tool_execution],
            ActionCategory.FILE_OPERATION: [self._cleanup_file_operation],
            ActionCategory.COMMAND_EXECUTION: [self._cleanup_command_execution],
            ActionCategory.GENERIC: [self._cleanup_generic],
        }

    # --- classification ---

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, ConductorError):
            if exc.retryable:
                return True
            if exc.code in _FATAL_CODES:
                return False
        message = _error_message(exc).lower()
        name = type(exc).__name__.lower()
        for signature in self.policy.retryable_errors:
            needle = signature.lower()
            if needle in message or needle in name:
                return True
        return False

    def delay_for(self, attempt: int) -> float:
        return self.policy.delay_for(attempt)

    def register_cleanup(self, category: ActionCategory, hook: CleanupHook) -> None:
        """Add a cleanup hook that runs when a failure in ``category`` is surfaced."""
        self._cleanup_hooks.setdefault(category, []).append(hook)

    # --- execution ---

    async def execute(
        self,
        action: str,
        fn: Callable[[], Awaitable[T]],
        *,
        category: ActionCategory | None = None,
        tool_name: str | None = None,
        task_id: str | None = None,
    ) -> T:
        """Run ``fn`` with retries. Re-raises the last error once it is surfaced."""
        try:
            return await self._attempt_loop(action, fn, category, tool_name, task_id)
        except _Surfaced as surfaced:
            raise surfaced.error

    async def run(
        self,
        action: str,
        fn: Callable[[], Awaitable[str]],
        *,
        category: ActionCategory | None = None,
        tool_name: str | None = None,
        task_id: str | None = None,
    ) -> Outcome:
        """Like execute(), but returns Ok / RetryableError / FatalError."""
        try:
            value = await self._attempt_loop(action, fn, category, tool_name, task_id)
        except _Surfaced as surfaced:
            message = self.format_error_with_status(surfaced.error)
            if self.is_retryable(surfaced.error):
                return RetryableError(message=message, attempts=surfaced.attempts)
            code = surfaced.error.code.value if isinstance(surfaced.error, ConductorError) else None
            return FatalError(message=message, code=code)
        return Ok(value if isinstance(value, str) else str(value))

    async def _attempt_loop(
        self,
        action: str,
        fn: Callable[[], Awaitable[T]],
        category: ActionCategory | None,
        tool_name: str | None,
        task_id: str | None,
    ) -> T:
        resolved = category or self._category_for_action(action)
        attempt = 0
        while True:
            try:
                return await fn()
            except (asyncio.CancelledError, TaskCancelledError):
                raise
            except Exception as exc:
                result = await self.handle_error(
                    action, exc, attempt=attempt, category=resolved, tool_name=tool_name, task_id=task_id
                )
                if not result.should_retry:
                    raise _Surfaced(exc, attempt + 1, result) from exc
                await self._sleep(self.delay_for(attempt))
                attempt += 1

    async def handle_error(
        self,
        action: str,
        exc: BaseException,
        *,
        attempt: int = 0,
        category: ActionCategory | None = None,
        tool_name: str | None = None,
        task_id: str | None = None,
    ) -> RecoveryResult:
        """Record a failure and decide whether it should be retried."""
        record = ErrorRecord(
            action=action,
            category=category or self._category_for_action(action),
            error_type=type(exc).__name__,
            message=_error_message(exc),
            attempt=attempt,
            timestamp=self._clock(),
            tool_name=tool_name,
            task_id=task_id,
        )
        self._remember(record)
        self._notify(self._on_error, record)
        logger.warning(
            f"{action} failed (attempt {attempt + 1}): {record.signature}"
            + (f" [tool={tool_name}]" if tool_name else "")
        )

        if not self.is_retryable(exc):
            result = RecoveryResult(
                success=False,
                message=f"Non-retryable error: {record.message}",
                should_retry=False,
                cleanup_performed=await self._perform_cleanup(record),
            )
        elif attempt >= self.policy.max_retries:
            result = RecoveryResult(
                success=False,
                message=f"Max retries ({self.policy.max_retries}) reached for: {action}",
                should_retry=False,
                cleanup_performed=await self._perform_cleanup(record),
            )
        else:
            delay = self.delay_for(attempt)
            result = RecoveryResult(
                success=False,
                message=(
                    f"Retryable error. Retrying in {delay:.2f}s "
                    f"(attempt {attempt + 1}/{self.policy.max_retries})"
                ),
                should_retry=True,
                cleanup_performed=False,
            )
        self._notify(self._on_recovery, result)
        return result

    # --- cleanup ---

    async def _perform_cleanup(self, record: ErrorRecord) -> bool:
        hooks = self._cleanup_hooks.get(record.category) or self._cleanup_hooks[ActionCategory.GENERIC]
        try:
            for hook in hooks:
                maybe = hook(record)
                if inspect.isawaitable(maybe):
                    await maybe
        except Exception as e:
            logger.warning(f"Cleanup after {record.action} failed: {e}", exc_info=True)
            return False
        return True

    async def _cleanup_model_call(self, record: ErrorRecord) -> None:
        logger.info(f"Model call cleanup done for {record.action} (stream state discarded)")

    async def _cleanup_tool_execution(self, record: ErrorRecord) -> None:
        logger.info(f"Tool cleanup done for {record.tool_name or record.action}")

    async def _cleanup_file_operation(self, record: ErrorRecord) -> None:
        logger.info(f"File operation cleanup done for {record.tool_name or record.action}")

    async def _cleanup_command_execution(self, record: ErrorRecord) -> None:
        logger.info(f"Command cleanup done for {record.tool_name or record.action}")

    async def _cleanup_generic(self, record: ErrorRecord) -> None:
        logger.info(f"General cleanup done for {record.action}")

    # --- history ---

    def _remember(self, record: ErrorRecord) -> None:
        self._history.append(record)
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]

    @property
    def history(self) -> list[ErrorRecord]:
        return list(self._history)

    def recent_retry_count(self, action: str, window: float = RETRY_COUNT_WINDOW_SECONDS) -> int:
        """Failures recorded for ``action`` within the last ``window`` seconds."""
        cutoff = self._clock() - window
        return sum(1 for r in self._history if r.action == action and r.timestamp >= cutoff)

    def has_too_many_recent_errors(self, threshold: int = 10, window: float = 300.0) -> bool:
        cutoff = self._clock() - window
        return sum(1 for r in self._history if r.timestamp >= cutoff) >= threshold

    def prune_history(self, max_age: float = 3600.0) -> int:
        """Drop records older than ``max_age`` seconds. Returns how many were removed."""
        cutoff = self._clock() - max_age
        before = len(self._history)
        self._history = [r for r in self._history if r.timestamp >= cutoff]
        return before - len(self._history)

    def error_stats(self) -> dict:
        now = self._clock()
        by_action = Counter(r.action for r in self._history)
        by_type = Counter(r.error_type for r in self._history)
        retried = sum(1 for r in self._history if r.attempt > 0)
        total = len(self._history)
        return {
            "total_errors": total,
            "errors_by_action": dict(by_action),
            "errors_by_type": dict(by_type),
            "recent_errors": [r.to_dict() for r in self._history if now - r.timestamp < 3600],
            "retry_rate": (retried / total) * 100 if total else 0.0,
        }

    # --- formatting ---

    @staticmethod
    def format_error_with_status(exc: BaseException) -> str:
        """Prefix ``HTTP <code> <reason>:`` when the error carries a status code."""
        message = _error_message(exc)
        status = getattr(exc, "status_code", None)
        if status is None:
            match = _STATUS_RE.search(message)
            if match:
                status = int(match.group(1))
        if status is None:
            return message
        return f"HTTP {status} {_HTTP_STATUS_TEXT.get(status, 'Unknown Error')}: {message}"

    @staticmethod
    def _category_for_action(action: str) -> ActionCategory:
        try:
            return ActionCategory(action)
        except ValueError:
            return ActionCategory.GENERIC

    @staticmethod
    def _notify(callback: Callable[[Any], Any] | None, payload: Any) -> None:
        if callback is None:
            return
        try:
            callback(payload)
        except Exception as e:
            logger.warning(f"Recovery callback error: {e}")
