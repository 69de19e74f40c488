"""Context window manager: token estimation and history truncation.

Keeps a rolling conversation within a model's budget (max_tokens minus a
reserved buffer). When the budget is exceeded a contiguous span of unpinned
entries is replaced by a single pinned system marker. Entry 0 and the most
recent ``preserve_recent`` entries are never removed.
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```[\s\S]*?```")

MIN_PRESERVE_RECENT = 3
DEFAULT_PROFILE_ID = "default"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TruncationStrategy(str, Enum):
    QUARTER = "quarter"
    HALF = "half"
    AGGRESSIVE = "aggressive"

    @property
    def fraction(self) -> float:
        return _STRATEGY_FRACTIONS[self]


_STRATEGY_FRACTIONS = {
    TruncationStrategy.QUARTER: 0.25,
    TruncationStrategy.HALF: 0.5,
    TruncationStrategy.AGGRESSIVE: 0.75,
}


@dataclass
class ConversationEntry:
    role: Role
    text: str
    tokens: int = 0
    timestamp: float = field(default_factory=time.time)
    pinned: bool = False


@dataclass(frozen=True)
class TruncationRange:
    """Half-open span [start, end) of entries removed in one truncation."""

    start: int
    end: int
    tokens_removed: int

    def __len__(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class ContextWindowProfile:
    model_id: str
    max_tokens: int
    buffer_tokens: int

    @property
    def allowed_tokens(self) -> int:
        return self.max_tokens - self.buffer_tokens


DEFAULT_PROFILES: dict[str, ContextWindowProfile] = {
    p.model_id: p
    for p in (
        ContextWindowProfile("claude-3-sonnet-20240229", 200_000, 40_000),
        ContextWindowProfile("claude-3-5-haiku-20241022", 200_000, 40_000),
        ContextWindowProfile("gpt-4o", 128_000, 30_000),
        ContextWindowProfile("gpt-4o-mini", 128_000, 30_000),
        ContextWindowProfile("deepseek-chat", 64_000, 27_000),
        ContextWindowProfile(DEFAULT_PROFILE_ID, 128_000, 30_000),
    )
}


def estimate_tokens(text: str) -> int:
    """Approximate token cost: fenced code at 3 chars/token, prose at 4 chars/token."""
    if not text:
        return 0
    code_tokens = 0
    for block in _FENCED_BLOCK.findall(text):
        code_tokens += math.ceil(len(block) / 3)
    prose = _FENCED_BLOCK.sub("", text)
    return code_tokens + math.ceil(len(prose) / 4)


def strategy_for_pressure(pressure: float) -> TruncationStrategy:
    """Pick a strategy from total/allowed token pressure."""
    if pressure > 1.5:
        return TruncationStrategy.AGGRESSIVE
    if pressure > 1.2:
        return TruncationStrategy.HALF
    return TruncationStrategy.QUARTER


def truncation_marker(tokens_removed: int, start: int, end: int) -> str:
    return (
        f"[CONTEXT TRUNCATED] Removed {tokens_removed} tokens from conversation history "
        f"(entries {start} to {end - 1}) to stay within context limits."
    )


class ContextWindowManager:
    """Owns the conversation entries for one task."""

    def __init__(
        self,
        model_id: str = DEFAULT_PROFILE_ID,
        profiles: dict[str, ContextWindowProfile] | None = None,
        preserve_recent: int = MIN_PRESERVE_RECENT,
        clock: Callable[[], float] = time.time,
    ):
        self.model_id = model_id
        self._profiles = dict(DEFAULT_PROFILES)
        if profiles:
            self._profiles.update(profiles)
        if preserve_recent < MIN_PRESERVE_RECENT:
            logger.warning(
                f"preserve_recent={preserve_recent} is below {MIN_PRESERVE_RECENT}; "
                f"using {MIN_PRESERVE_RECENT}"
            )
        self.preserve_recent = max(preserve_recent, MIN_PRESERVE_RECENT)
        self._clock = clock
        self._entries: list[ConversationEntry] = []
        self._removed_ranges: list[TruncationRange] = []

    # --- profiles ---

    def register_profile(self, profile: ContextWindowProfile) -> None:
        self._profiles[profile.model_id] = profile

    def profile_for(self, model_id: str | None = None) -> ContextWindowProfile:
        """Profile for ``model_id``, falling back to the default profile."""
        key = model_id or self.model_id
        return self._profiles.get(key) or self._profiles[DEFAULT_PROFILE_ID]

    @property
    def profiles(self) -> dict[str, ContextWindowProfile]:
        return dict(self._profiles)

    # --- entries ---

    @property
    def entries(self) -> list[ConversationEntry]:
        return list(self._entries)

    @property
    def removed_ranges(self) -> list[TruncationRange]:
        return list(self._removed_ranges)

    def __len__(self) -> int:
        return len(self._entries)

    def add_entry(self, role: Role | str, text: str, pinned: bool = False) -> ConversationEntry:
        entry = ConversationEntry(
            role=Role(role),
            text=text,
            tokens=estimate_tokens(text),
            timestamp=self._clock(),
            pinned=pinned,
        )
        self._entries.append(entry)
        return entry

    def mark_pinned(self, index: int) -> bool:
        """Exclude an entry from truncation. Returns False for an out-of-range index."""
        if 0 <= index < len(self._entries):
            self._entries[index].pinned = True
            return True
        return False

    def clear(self) -> None:
        self._entries = []
        self._removed_ranges = []

    # --- budget ---

    def total_tokens(self) -> int:
        return sum(e.tokens for e in self._entries)

    def needs_truncation(self, model_id: str | None = None) -> bool:
        return self.total_tokens() > self.profile_for(model_id).allowed_tokens

    def pressure(self, model_id: str | None = None) -> float:
        allowed = self.profile_for(model_id).allowed_tokens
        if allowed <= 0:
            return math.inf
        return self.total_tokens() / allowed

    def select_truncation_range(
        self,
        strategy: TruncationStrategy | str = TruncationStrategy.HALF,
        model_id: str | None = None,
    ) -> TruncationRange | None:
        """Choose a span of unpinned entries to drop, or None.

        Returns None while the conversation is within budget. Otherwise scans
        forward from index 1 up to the preserved tail, restarting the span at
        every pinned entry, and returns the first span whose tokens reach the
        strategy's target. None when no span reaches it.
        """
        if not self.needs_truncation(model_id):
            return None
        strategy = TruncationStrategy(strategy)
        target = math.floor(self.total_tokens() * strategy.fraction)
        stop = len(self._entries) - self.preserve_recent

        start = 1
        tokens = 0
        for i in range(1, stop):
            entry = self._entries[i]
            if entry.pinned:
                start = i + 1
                tokens = 0
                continue
            tokens += entry.tokens
            if tokens >= target:
                return TruncationRange(start=start, end=i + 1, tokens_removed=tokens)
        return None

    def apply_truncation(self, truncation: TruncationRange | None) -> list[ConversationEntry]:
        """Replace ``truncation`` with a pinned marker entry. None is a no-op."""
        if truncation is None:
            return self.entries
        if truncation.start < 1 or truncation.end > len(self._entries) or len(truncation) <= 0:
            logger.warning(f"Ignoring out-of-bounds truncation range {truncation}")
            return self.entries
        if any(e.pinned for e in self._entries[truncation.start:truncation.end]):
            logger.warning(f"Ignoring truncation range {truncation} covering pinned entries")
            return self.entries

        text = truncation_marker(truncation.tokens_removed, truncation.start, truncation.end)
        marker = ConversationEntry(
            role=Role.SYSTEM,
            text=text,
            tokens=estimate_tokens(text),
            timestamp=self._clock(),
            pinned=True,
        )
        self._entries[truncation.start:truncation.end] = [marker]
        self._removed_ranges.append(truncation)
        return self.entries

    def auto_truncate(self, model_id: str | None = None) -> TruncationRange | None:
        """Truncate once if over budget, choosing the strategy from pressure."""
        if not self.needs_truncation(model_id):
            return None
        strategy = strategy_for_pressure(self.pressure(model_id))
        truncation = self.select_truncation_range(strategy, model_id)
        if truncation is None:
            logger.warning("Context over budget but nothing left to truncate")
            return None
        self.apply_truncation(truncation)
        logger.info(
            f"Context truncated: removed {truncation.tokens_removed} tokens "
            f"using {strategy.value} strategy"
        )
        return truncation

    def stats(self, model_id: str | None = None) -> dict:
        profile = self.profile_for(model_id)
        total = self.total_tokens()
        return {
            "model_id": profile.model_id,
            "total_tokens": total,
            "max_tokens": profile.max_tokens,
            "buffer_tokens": profile.buffer_tokens,
            "usage_percentage": (total / profile.max_tokens) * 100 if profile.max_tokens else 0.0,
            "needs_truncation": total > profile.allowed_tokens,
            "entry_count": len(self._entries),
            "truncation_count": len(self._removed_ranges),
        }
