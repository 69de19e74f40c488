"""Tagged results for externally caused actions.

Callers branch on the outcome kind instead of catching exceptions:
``Ok`` carries the value, ``RetryableError`` means the retry budget ran out on
a transient failure, ``FatalError`` was never eligible for retry, and
``UserDeclined`` is a normal terminal outcome when a confirmation is rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Ok:
    value: str


@dataclass(frozen=True)
class RetryableError:
    message: str
    attempts: int = 1


@dataclass(frozen=True)
class FatalError:
    message: str
    code: str | None = None


@dataclass(frozen=True)
class UserDeclined:
    reason: str = "declined by user"


Outcome = Union[Ok, RetryableError, FatalError, UserDeclined]


def is_ok(outcome: Outcome) -> bool:
    return isinstance(outcome, Ok)


def is_error(outcome: Outcome) -> bool:
    return isinstance(outcome, (RetryableError, FatalError))


def render_outcome(outcome: Outcome) -> str:
    """Inline text for a dispatch result.

    An ``Ok`` renders as its value (possibly empty for silent operations),
    errors as ``Error: ...`` and declines as ``Declined: ...``.
    """
    if isinstance(outcome, Ok):
        return outcome.value
    if isinstance(outcome, UserDeclined):
        return f"Declined: {outcome.reason}"
    return f"Error: {outcome.message}"
