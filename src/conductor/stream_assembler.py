"""Stream assembler: builds the block list from a provider's chunk feed.

Every processed chunk requests a "present" pass that notifies the observer.
Presenting is guarded by a lock flag: a request arriving while a pass is in
flight only sets a pending-updates flag, and the in-flight pass loops again
before releasing the lock. Bursts of updates therefore coalesce into fewer
notifications, but the last state is always presented.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable, Union

from conductor.capabilities import CAPABILITY_NAMES
from conductor.errors import ProviderStreamError, TaskCancelledError
from conductor.message_parser import BlockKind, ContentBlock, MessageParser, ToolInvocation, block_id

logger = logging.getLogger(__name__)


class ChunkKind(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass(frozen=True)
class StreamChunk:
    """One element of a provider chunk feed."""

    kind: ChunkKind
    content: str = ""
    partial: bool = False
    invocation: ToolInvocation | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


UpdateObserver = Callable[[list[ContentBlock], int], Union[Awaitable[None], None]]


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


class StreamAssembler:
    """Incremental ContentBlock builder with coalescing presentation."""

    def __init__(
        self,
        on_update: UpdateObserver | None = None,
        on_complete: Callable[[], Any] | None = None,
        on_error: Callable[[Exception], Any] | None = None,
        yield_interval: float = 0.0,
    ):
        self._on_update = on_update
        self._on_complete = on_complete
        self._on_error = on_error
        self._yield_interval = yield_interval
        self._blocks: list[ContentBlock] = []
        self._index = 0
        self._present_locked = False
        self._has_pending_updates = False
        self._completed = False
        self.errors: list[str] = []
        self.presentations = 0

    # --- feed ---

    async def consume(
        self,
        feed: AsyncIterable[StreamChunk],
        should_stop: Callable[[], bool] | None = None,
    ) -> list[ContentBlock]:
        """Drain a chunk feed. ``should_stop`` is checked at every chunk boundary."""
        async for chunk in feed:
            if should_stop is not None and should_stop():
                raise TaskCancelledError("Task cancelled while streaming")
            await self.process(chunk)
        if not self._completed:
            logger.debug("Chunk feed ended without a completion signal")
            await self.process(StreamChunk(kind=ChunkKind.COMPLETE))
        return self.blocks

    async def process(self, chunk: StreamChunk) -> None:
        """Apply one chunk, then request a present pass."""
        if self._completed and chunk.kind != ChunkKind.ERROR:
            logger.warning(f"Ignoring {chunk.kind.value} chunk received after completion")
            return
        if chunk.kind == ChunkKind.TEXT:
            self._apply_block(BlockKind.TEXT, chunk)
        elif chunk.kind == ChunkKind.TOOL_USE:
            self._apply_block(BlockKind.TOOL_USE, chunk)
        elif chunk.kind == ChunkKind.ERROR:
            await self._handle_error(chunk)
        else:
            await self._handle_complete()
        await self.present()

    def _apply_block(self, kind: BlockKind, chunk: StreamChunk) -> None:
        block = self._current_or_create(kind)
        block.content = chunk.content
        block.partial = chunk.partial
        if kind == BlockKind.TOOL_USE:
            block.invocation = chunk.invocation
        if not chunk.partial:
            self._index += 1

    def _current_or_create(self, kind: BlockKind) -> ContentBlock:
        if self._index < len(self._blocks):
            block = self._blocks[self._index]
            if block.kind == kind:
                return block
            logger.debug(f"Replacing {block.kind.value} block at {self._index} with {kind.value}")
        block = ContentBlock(kind=kind, content="", partial=True, id=block_id(self._index))
        if self._index < len(self._blocks):
            self._blocks[self._index] = block
        else:
            self._blocks.append(block)
        return block

    async def _handle_error(self, chunk: StreamChunk) -> None:
        message = chunk.content or "stream error"
        self.errors.append(message)
        logger.warning(f"Error chunk in stream: {message}")
        if self._on_error is not None:
            try:
                await _maybe_await(self._on_error(ProviderStreamError(message)))
            except Exception as e:
                logger.warning(f"Stream error callback failed: {e}")

    async def _handle_complete(self) -> None:
        if self._blocks and self._blocks[-1].partial:
            self._blocks[-1].partial = False
        self._index = len(self._blocks)
        self._completed = True
        if self._on_complete is not None:
            try:
                await _maybe_await(self._on_complete())
            except Exception as e:
                logger.warning(f"Stream completion callback failed: {e}")

    # --- presentation ---

    async def present(self) -> None:
        """Notify the observer, coalescing requests that arrive mid-pass."""
        if self._present_locked:
            self._has_pending_updates = True
            return
        self._present_locked = True
        try:
            while True:
                self._has_pending_updates = False
                if self._blocks and self._on_update is not None:
                    index = min(self._index, len(self._blocks) - 1)
                    try:
                        await _maybe_await(self._on_update(self.blocks, index))
                    except Exception as e:
                        logger.warning(f"Stream observer failed: {e}")
                    self.presentations += 1
                await asyncio.sleep(self._yield_interval)
                if not self._has_pending_updates:
                    break
        finally:
            self._present_locked = False

    # --- state ---

    @property
    def blocks(self) -> list[ContentBlock]:
        return [replace(b) for b in self._blocks]

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def current_index(self) -> int:
        return self._index

    def full_text(self) -> str:
        return "".join(b.content for b in self._blocks if b.kind == BlockKind.TEXT)

    def tool_invocations(self) -> list[ToolInvocation]:
        return [b.invocation for b in self._blocks if b.kind == BlockKind.TOOL_USE and b.invocation]

    def has_partial_content(self) -> bool:
        return any(b.partial for b in self._blocks)

    def reset(self) -> None:
        self._blocks = []
        self._index = 0
        self._present_locked = False
        self._has_pending_updates = False
        self._completed = False
        self.errors = []
        self.presentations = 0


async def _aiter(deltas: AsyncIterable[str] | Iterable[str]) -> AsyncIterator[str]:
    if hasattr(deltas, "__aiter__"):
        async for delta in deltas:  # type: ignore[union-attr]
            yield delta
    else:
        for delta in deltas:  # type: ignore[union-attr]
            yield delta


def _chunk_for(block: ContentBlock) -> StreamChunk:
    if block.kind == BlockKind.TOOL_USE:
        return StreamChunk(
            kind=ChunkKind.TOOL_USE,
            content=block.content,
            partial=block.partial,
            invocation=block.invocation,
        )
    return StreamChunk(kind=ChunkKind.TEXT, content=block.content, partial=block.partial)


async def chunks_from_text(
    deltas: AsyncIterable[str] | Iterable[str],
    capability_names: Iterable[str] = CAPABILITY_NAMES,
) -> AsyncIterator[StreamChunk]:
    """Turn raw text deltas into a typed chunk feed using the incremental parser."""
    parser = MessageParser(capability_names)
    emitted = 0
    last_partial: StreamChunk | None = None

    def drain(blocks: list[ContentBlock]) -> list[StreamChunk]:
        nonlocal emitted, last_partial
        out = []
        for block in blocks[emitted:]:
            chunk = _chunk_for(block)
            if block.partial:
                if chunk != last_partial:
                    out.append(chunk)
                    last_partial = chunk
                break
            out.append(chunk)
            emitted += 1
            last_partial = None
        return out

    async for delta in _aiter(deltas):
        for chunk in drain(parser.feed(delta)):
            yield chunk
    for chunk in drain(parser.finish()):
        yield chunk
    yield StreamChunk(kind=ChunkKind.COMPLETE)
