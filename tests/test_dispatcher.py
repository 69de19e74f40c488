"""Tests for conductor.dispatcher: concurrent, isolated capability dispatch."""

import asyncio

import pytest

from conductor.approval import ApprovalGate, StaticSafetyPolicy
from conductor.capabilities import CapabilityRegistry
from conductor.dispatcher import CapabilityDispatcher, integrate_results, partition_blocks
from conductor.events import EVENT_TOOL_RESULT, EVENT_TOOL_USE
from conductor.message_parser import parse_assistant_message
from conductor.outcomes import FatalError, Ok, UserDeclined

SCENARIO = 'Sure, let me check. <tool name="list_files"><path>.</path></tool> Done.'


async def wait_for_pending(gate, count=1):
    for _ in range(200):
        if len(gate.pending()) >= count:
            return gate.pending()
        await asyncio.sleep(0)
    raise AssertionError("no pending confirmation appeared")


class TestIntegration:
    """Folding results into the response text."""

    def test_no_results_joins_text(self):
        assert integrate_results("before", "after", []) == "before\nafter"
        assert integrate_results("only", "", []) == "only"

    def test_results_follow_prefix_after_blank_line(self):
        assert integrate_results("Intro", "", ["r1", "r2"]) == "Intro\n\nr1\n\nr2"

    def test_empty_results_are_dropped(self):
        assert integrate_results("Intro", "Outro", ["", "r2"]) == "Intro\n\nr2\nOutro"

    def test_no_prefix(self):
        assert integrate_results("", "", ["r1"]) == "r1"
        assert integrate_results("", "tail", [""]) == "tail"

    def test_partition(self):
        prefix, trailing, invocations = partition_blocks(parse_assistant_message(SCENARIO))
        assert prefix == "Sure, let me check."
        assert trailing == "Done."
        assert [i.name for i in invocations] == ["list_files"]


class TestDispatch:
    @pytest.mark.asyncio
    async def test_single_invocation_round(self, registry, supervisor):
        dispatcher = CapabilityDispatcher(registry, supervisor=supervisor)
        batch = await dispatcher.dispatch(parse_assistant_message(SCENARIO))
        assert batch.integrated_text == "Sure, let me check.\n\na.txt\nb.txt\nDone."
        assert len(batch.invocations) == 1
        assert batch.outcomes == [Ok("a.txt\nb.txt")]

    @pytest.mark.asyncio
    async def test_text_only_round(self, registry, supervisor):
        dispatcher = CapabilityDispatcher(registry, supervisor=supervisor)
        batch = await dispatcher.dispatch(parse_assistant_message("No tools needed."))
        assert batch.invocations == []
        assert batch.integrated_text == "No tools needed."

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self, supervisor):
        registry = CapabilityRegistry()
        registry.register("list_files", lambda params: "a.txt")

        async def read_file(params):
            raise RuntimeError("disk on fire")

        registry.register("read_file", read_file)
        registry.register("search_files", lambda params: f"match for {params['regex']}")

        text = (
            '<tool name="list_files"></tool>'
            '<tool name="read_file"><path>x</path></tool>'
            '<tool name="search_files"><regex>x</regex></tool>'
        )
        batch = await CapabilityDispatcher(registry, supervisor=supervisor).dispatch(parse_assistant_message(text))
        assert batch.results == ["a.txt", "Error: disk on fire", "match for x"]
        assert batch.error_count == 1
        assert isinstance(batch.outcomes[1], FatalError)

    @pytest.mark.asyncio
    async def test_results_keep_invocation_order(self, supervisor):
        finished = []
        registry = CapabilityRegistry()

        async def read_file(params):
            await asyncio.sleep(float(params["delay"]))
            finished.append(params["path"])
            return params["path"]

        registry.register("read_file", read_file)
        text = "".join(
            f'<tool name="read_file"><path>{name}</path><delay>{delay}</delay></tool>'
            for name, delay in (("slow", 0.05), ("fast", 0.0), ("medium", 0.02))
        )
        batch = await CapabilityDispatcher(registry, supervisor=supervisor).dispatch(parse_assistant_message(text))
        assert batch.results == ["slow", "fast", "medium"]
        assert finished == ["fast", "medium", "slow"]

    @pytest.mark.asyncio
    async def test_unknown_and_unavailable_capabilities(self, registry, supervisor):
        text = '<tool name="launch_rockets"></tool><tool name="web_search"><query>q</query></tool><list_files></list_files>'
        batch = await CapabilityDispatcher(registry, supervisor=supervisor).dispatch(parse_assistant_message(text))
        assert batch.results == [
            "Error: Unknown capability: launch_rockets",
            "Error: Capability not available: web_search",
            "a.txt\nb.txt",
        ]
        assert batch.outcomes[0].code == "CAPABILITY_UNKNOWN"

    @pytest.mark.asyncio
    async def test_cut_off_invocation_is_an_error(self, registry, supervisor):
        blocks = parse_assistant_message('Let me read. <tool name="read_file"><path>src/ma')
        batch = await CapabilityDispatcher(registry, supervisor=supervisor).dispatch(blocks)
        assert batch.results == ["Error: invocation of read_file was cut off before completion"]

    @pytest.mark.asyncio
    async def test_none_result_becomes_empty(self, supervisor):
        registry = CapabilityRegistry()
        registry.register("continue_reasoning", lambda params: None)
        batch = await CapabilityDispatcher(registry, supervisor=supervisor).dispatch(
            parse_assistant_message("Thinking. <continue_reasoning></continue_reasoning>")
        )
        assert batch.outcomes == [Ok("")]
        assert batch.integrated_text == "Thinking."

    @pytest.mark.asyncio
    async def test_emits_tool_events(self, registry, supervisor, events):
        dispatcher = CapabilityDispatcher(registry, supervisor=supervisor, events=events)
        await dispatcher.dispatch(parse_assistant_message(SCENARIO), task_id="task-1")
        types = [e["event_type"] for e in events.recent()]
        assert types == [EVENT_TOOL_USE, EVENT_TOOL_RESULT]
        assert events.recent()[1]["metadata"]["result"] == "a.txt\nb.txt"
        assert events.recent()[0]["task_id"] == "task-1"


class TestConfirmation:
    """Dispatch through the approval gate."""

    @pytest.mark.asyncio
    async def test_declined_invocation(self, registry, supervisor, events):
        gate = ApprovalGate(StaticSafetyPolicy(), events)
        dispatcher = CapabilityDispatcher(registry, gate=gate, supervisor=supervisor, events=events)
        task = asyncio.create_task(dispatcher.dispatch(parse_assistant_message(
            '<tool name="execute_command"><command>rm -rf build</command></tool>'
        )))
        pending = await wait_for_pending(gate)
        assert pending[0].command == "rm -rf build"
        assert gate.reject(pending[0].id)

        batch = await task
        assert batch.outcomes == [UserDeclined("execute_command was not approved")]
        assert batch.results == ["Declined: execute_command was not approved"]
        assert batch.error_count == 0

    @pytest.mark.asyncio
    async def test_approved_invocation_runs(self, registry, supervisor):
        gate = ApprovalGate(StaticSafetyPolicy())
        dispatcher = CapabilityDispatcher(registry, gate=gate, supervisor=supervisor)
        task = asyncio.create_task(dispatcher.dispatch(parse_assistant_message(
            "<execute_command><command>ls</command></execute_command>"
        )))
        pending = await wait_for_pending(gate)
        gate.approve(pending[0].id)
        batch = await task
        assert batch.results == ["ran ls"]
        assert gate.pending() == []

    @pytest.mark.asyncio
    async def test_auto_approved_reads_skip_the_gate(self, registry, supervisor):
        gate = ApprovalGate(StaticSafetyPolicy())
        batch = await CapabilityDispatcher(registry, gate=gate, supervisor=supervisor).dispatch(
            parse_assistant_message('<tool name="read_file"><path>a</path></tool>')
        )
        assert batch.results == ["contents of a"]

    @pytest.mark.asyncio
    async def test_one_declined_sibling_does_not_block_others(self, registry, supervisor):
        gate = ApprovalGate(StaticSafetyPolicy())
        text = (
            '<tool name="execute_command"><command>make</command></tool>'
            '<tool name="list_files"></tool>'
        )
        task = asyncio.create_task(
            CapabilityDispatcher(registry, gate=gate, supervisor=supervisor).dispatch(parse_assistant_message(text))
        )
        pending = await wait_for_pending(gate)
        gate.reject(pending[0].id)
        batch = await task
        assert batch.results == ["Declined: execute_command was not approved", "a.txt\nb.txt"]
