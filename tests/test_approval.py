"""Tests for conductor.approval: confirmation handshake and safety policy."""

import asyncio

import pytest

from conductor.approval import ApprovalGate, StaticSafetyPolicy, describe_invocation
from conductor.config import ApprovalConfig
from conductor.events import EVENT_APPROVAL_NEEDED, EVENT_APPROVAL_RESOLVED
from conductor.message_parser import ToolInvocation


class TestSafetyPolicy:
    def test_defaults(self):
        policy = StaticSafetyPolicy()
        assert policy.requires_approval("read_file") is False
        assert policy.requires_approval("search_memories") is False
        assert policy.requires_approval("list_files") is False
        assert policy.requires_approval("execute_command") is True
        assert policy.requires_approval("write_to_file") is True
        assert policy.requires_approval("web_fetch") is True
        assert policy.requires_approval("continue_reasoning") is False
        assert policy.requires_approval("create_memory") is None

    def test_from_config(self):
        policy = StaticSafetyPolicy.from_config(
            ApprovalConfig(auto_approve_read=False, auto_approve_list=False, confirm_dangerous=False)
        )
        assert policy.requires_approval("read_file") is True
        assert policy.requires_approval("list_files") is True
        assert policy.requires_approval("execute_command") is False

    def test_gate_defaults_to_requiring_approval(self):
        assert ApprovalGate().requires_approval("read_file") is True
        assert ApprovalGate(StaticSafetyPolicy()).requires_approval("create_memory") is True

    def test_failing_policy_requires_approval(self):
        class Broken:
            def requires_approval(self, tool_name):
                raise RuntimeError("policy store offline")

        assert ApprovalGate(Broken()).requires_approval("read_file") is True

    def test_describe_invocation(self):
        assert describe_invocation(ToolInvocation("list_files")) == "list_files"
        assert describe_invocation(ToolInvocation("read_file", {"path": "a.txt"})) == "read_file: path=a.txt"


class TestHandshake:
    @pytest.mark.asyncio
    async def test_request_emits_event_and_waits(self, events):
        gate = ApprovalGate(events=events, workspace="/work")
        pending = gate.request_confirmation("make test", description="Run tests")
        assert pending.id.startswith("confirm-")
        assert pending.directory == "/work"
        assert gate.pending() == [pending]
        assert not pending.future.done()

        needed = events.recent(event_type=EVENT_APPROVAL_NEEDED)[-1]
        assert needed["metadata"]["id"] == pending.id
        assert needed["metadata"]["command"] == "make test"
        assert needed["metadata"]["description"] == "Run tests"
        assert needed["metadata"]["directory"] == "/work"

        assert gate.approve(pending.id)
        assert await pending.future is True
        assert gate.pending() == []
        resolved = events.recent(event_type=EVENT_APPROVAL_RESOLVED)[-1]
        assert resolved["metadata"] == {"id": pending.id, "approved": True}

    @pytest.mark.asyncio
    async def test_resolves_at_most_once(self):
        gate = ApprovalGate()
        pending = gate.request_confirmation("deploy")
        assert gate.reject(pending.id) is True
        assert gate.approve(pending.id) is False
        assert gate.reject(pending.id) is False
        assert await pending.future is False

    @pytest.mark.asyncio
    async def test_unknown_id(self):
        assert ApprovalGate().approve("confirm-nope-1") is False

    @pytest.mark.asyncio
    async def test_ids_are_unique_and_scoped_per_gate(self):
        first, second = ApprovalGate(), ApprovalGate()
        a = first.request_confirmation("a")
        b = first.request_confirmation("b")
        c = second.request_confirmation("c")
        assert len({a.id, b.id, c.id}) == 3
        assert second.approve(a.id) is False
        assert not a.future.done()
        assert first.approve(a.id) is True

    @pytest.mark.asyncio
    async def test_auto_run_resolves_immediately(self, events):
        gate = ApprovalGate(events=events, auto_run=True)
        pending = gate.request_confirmation("rm build")
        assert pending.future.done()
        assert pending.future.result() is True
        assert gate.pending() == []
        needed = events.recent(event_type=EVENT_APPROVAL_NEEDED)[-1]
        assert needed["metadata"]["auto_run"] is True

    @pytest.mark.asyncio
    async def test_cancel_all_rejects_everything(self):
        gate = ApprovalGate()
        a = gate.request_confirmation("a")
        b = gate.request_confirmation("b")
        assert gate.cancel_all() == 2
        assert a.future.result() is False
        assert b.future.result() is False
        assert gate.pending() == []
        assert gate.cancel_all() == 0

    @pytest.mark.asyncio
    async def test_confirm_invocation(self):
        gate = ApprovalGate(StaticSafetyPolicy())
        invocation = ToolInvocation("execute_command", {"command": "pytest", "cwd": "/repo"})
        task = asyncio.create_task(gate.confirm(invocation))
        for _ in range(50):
            if gate.pending():
                break
            await asyncio.sleep(0)
        pending = gate.pending()[0]
        assert pending.command == "pytest"
        assert pending.directory == "/repo"
        assert pending.tool_name == "execute_command"
        assert pending.description == "execute_command: command=pytest, cwd=/repo"

        gate.approve(pending.id)
        assert await task is True
        assert gate.pending() == []

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_cleaned_up(self):
        gate = ApprovalGate()
        task = asyncio.create_task(gate.confirm(ToolInvocation("write_to_file", {"path": "a"})))
        await asyncio.sleep(0)
        assert len(gate.pending()) == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert gate.pending() == []
