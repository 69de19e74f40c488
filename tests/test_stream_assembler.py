"""Tests for conductor.stream_assembler: chunk assembly and coalesced presentation."""

import asyncio

import pytest

from conductor.errors import ProviderStreamError, TaskCancelledError
from conductor.message_parser import BlockKind, ToolInvocation, parse_assistant_message
from conductor.stream_assembler import ChunkKind, StreamAssembler, StreamChunk, chunks_from_text

SCENARIO = 'Sure, let me check. <tool name="list_files"><path>.</path></tool> Done.'


async def _feed(chunks):
    for chunk in chunks:
        yield chunk


def _split(text, size):
    return [text[i:i + size] for i in range(0, len(text), size)]


class TestAssembly:
    """Building blocks from typed chunks."""

    @pytest.mark.asyncio
    async def test_partial_then_complete_text(self):
        assembler = StreamAssembler()
        await assembler.process(StreamChunk(ChunkKind.TEXT, "Hel", partial=True))
        await assembler.process(StreamChunk(ChunkKind.TEXT, "Hello", partial=True))
        assert len(assembler.blocks) == 1
        assert assembler.blocks[0].content == "Hello"
        assert assembler.current_index == 0

        await assembler.process(StreamChunk(ChunkKind.TEXT, "Hello world", partial=False))
        assert assembler.current_index == 1
        assert assembler.blocks[0].partial is False

    @pytest.mark.asyncio
    async def test_tool_chunk_carries_invocation(self):
        assembler = StreamAssembler()
        invocation = ToolInvocation("read_file", {"path": "a.txt"})
        await assembler.process(StreamChunk(ChunkKind.TEXT, "Reading"))
        await assembler.process(StreamChunk(ChunkKind.TOOL_USE, "<read_file>...", invocation=invocation))
        assert [b.kind for b in assembler.blocks] == [BlockKind.TEXT, BlockKind.TOOL_USE]
        assert assembler.tool_invocations() == [invocation]
        assert assembler.full_text() == "Reading"

    @pytest.mark.asyncio
    async def test_complete_forces_trailing_block_complete(self):
        assembler = StreamAssembler()
        await assembler.process(StreamChunk(ChunkKind.TEXT, "cut o", partial=True))
        assert assembler.has_partial_content()
        await assembler.process(StreamChunk(ChunkKind.COMPLETE))
        assert assembler.completed
        assert not assembler.has_partial_content()
        assert assembler.current_index == len(assembler.blocks) == 1

    @pytest.mark.asyncio
    async def test_chunks_after_complete_are_ignored(self):
        assembler = StreamAssembler()
        await assembler.process(StreamChunk(ChunkKind.TEXT, "done"))
        await assembler.process(StreamChunk(ChunkKind.COMPLETE))
        await assembler.process(StreamChunk(ChunkKind.TEXT, "late"))
        assert [b.content for b in assembler.blocks] == ["done"]

    @pytest.mark.asyncio
    async def test_kind_change_at_same_index_replaces_block(self):
        assembler = StreamAssembler()
        await assembler.process(StreamChunk(ChunkKind.TEXT, "<tool na", partial=True))
        invocation = ToolInvocation("list_files", {}, partial=True)
        await assembler.process(StreamChunk(ChunkKind.TOOL_USE, '<tool name="list_files">', partial=True,
                                            invocation=invocation))
        blocks = assembler.blocks
        assert len(blocks) == 1
        assert blocks[0].kind == BlockKind.TOOL_USE

    @pytest.mark.asyncio
    async def test_error_chunk_reports_and_records(self):
        seen = []
        assembler = StreamAssembler(on_error=seen.append)
        await assembler.process(StreamChunk(ChunkKind.ERROR, "rate limit exceeded"))
        assert assembler.errors == ["rate limit exceeded"]
        assert len(seen) == 1
        assert isinstance(seen[0], ProviderStreamError)
        assert str(seen[0]) == "rate limit exceeded"

    @pytest.mark.asyncio
    async def test_reset(self):
        assembler = StreamAssembler()
        await assembler.consume(_feed([StreamChunk(ChunkKind.TEXT, "x")]))
        assembler.reset()
        assert assembler.blocks == []
        assert not assembler.completed
        assert assembler.current_index == 0


class TestConsume:
    @pytest.mark.asyncio
    async def test_missing_complete_is_synthesized(self):
        completed = []
        assembler = StreamAssembler(on_complete=lambda: completed.append(True))
        blocks = await assembler.consume(_feed([StreamChunk(ChunkKind.TEXT, "tail", partial=True)]))
        assert assembler.completed
        assert completed == [True]
        assert blocks[0].partial is False

    @pytest.mark.asyncio
    async def test_should_stop_cancels_at_chunk_boundary(self):
        assembler = StreamAssembler()
        chunks = [StreamChunk(ChunkKind.TEXT, "a", partial=True), StreamChunk(ChunkKind.TEXT, "ab", partial=True)]
        calls = []

        def should_stop():
            calls.append(True)
            return len(calls) > 1

        with pytest.raises(TaskCancelledError):
            await assembler.consume(_feed(chunks), should_stop=should_stop)
        assert assembler.blocks[0].content == "a"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [1, 4, 11, 1000])
    async def test_text_deltas_assemble_like_one_shot_parse(self, size):
        assembler = StreamAssembler()
        blocks = await assembler.consume(chunks_from_text(_split(SCENARIO, size)))
        assert blocks == parse_assistant_message(SCENARIO)

    @pytest.mark.asyncio
    async def test_chunks_from_text_accepts_async_deltas(self):
        async def deltas():
            for piece in _split(SCENARIO, 5):
                yield piece

        chunks = [c async for c in chunks_from_text(deltas())]
        assert chunks[-1].kind == ChunkKind.COMPLETE
        complete = [c for c in chunks if not c.partial and c.kind != ChunkKind.COMPLETE]
        assert [c.kind for c in complete] == [ChunkKind.TEXT, ChunkKind.TOOL_USE, ChunkKind.TEXT]
        assert complete[1].invocation.name == "list_files"

    @pytest.mark.asyncio
    async def test_chunks_from_text_dedupes_partials(self):
        chunks = [c async for c in chunks_from_text(["<tool name=\"read_file\">", "", "", "<path>a</path>"])]
        partials = [c for c in chunks if c.partial]
        assert len(partials) == len(set((c.kind, c.content) for c in partials))


class TestPresentation:
    """Coalescing of observer notifications."""

    @pytest.mark.asyncio
    async def test_updates_during_a_pass_coalesce(self):
        release = asyncio.Event()
        seen = []

        async def observer(blocks, index):
            seen.append(blocks[index].content)
            if len(seen) == 1:
                await release.wait()

        assembler = StreamAssembler(on_update=observer)
        first = asyncio.create_task(assembler.process(StreamChunk(ChunkKind.TEXT, "a", partial=True)))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert seen == ["a"]

        await assembler.process(StreamChunk(ChunkKind.TEXT, "ab", partial=True))
        await assembler.process(StreamChunk(ChunkKind.TEXT, "abc", partial=True))
        assert seen == ["a"]

        release.set()
        await first
        assert seen == ["a", "abc"]
        assert assembler.presentations == 2

    @pytest.mark.asyncio
    async def test_every_sequential_update_is_presented(self):
        seen = []
        assembler = StreamAssembler(on_update=lambda blocks, index: seen.append((index, blocks[index].content)))
        await assembler.consume(_feed([
            StreamChunk(ChunkKind.TEXT, "one"),
            StreamChunk(ChunkKind.TEXT, "tw", partial=True),
            StreamChunk(ChunkKind.TEXT, "two"),
        ]))
        assert seen[:3] == [(0, "one"), (1, "tw"), (1, "two")]
        assert seen[-1] == (1, "two")

    @pytest.mark.asyncio
    async def test_observer_failure_does_not_stop_stream(self):
        def observer(blocks, index):
            raise RuntimeError("ui exploded")

        assembler = StreamAssembler(on_update=observer)
        blocks = await assembler.consume(_feed([StreamChunk(ChunkKind.TEXT, "still here")]))
        assert blocks[0].content == "still here"
        assert assembler.completed
