"""Shared test fixtures for the conductor test suite."""

import pytest

from conductor.capabilities import CapabilityRegistry
from conductor.events import EventBus
from conductor.memory import MemoryStore
from conductor.recovery import RecoverySupervisor, RetryPolicy


class FakeSleep:
    """Records requested backoff delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def memory(tmp_path):
    """Provide a MemoryStore backed by a temporary database."""
    return MemoryStore(db_path=tmp_path / "test_conductor.db")


@pytest.fixture
def events(memory):
    """EventBus persisting to the temporary store."""
    return EventBus(memory=memory, session_id="test-session")


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def supervisor(fake_sleep):
    """RecoverySupervisor with instant backoff."""
    return RecoverySupervisor(RetryPolicy(), sleep=fake_sleep)


@pytest.fixture
def workspace(tmp_path):
    """A small workspace directory for file and shell capabilities."""
    root = tmp_path / "workspace"
    root.mkdir()
    (root / "src").mkdir()
    (root / "src" / "main.py").write_text("def main():\n    print('hello')\n")
    (root / "src" / "utils.py").write_text("def helper():\n    return 42\n")
    (root / "README.md").write_text("# Demo\n\nA demo project.\n")
    return root


@pytest.fixture
def registry():
    """Registry with simple in-memory handlers."""
    reg = CapabilityRegistry()

    async def read_file(params):
        return f"contents of {params.get('path', '')}"

    async def list_files(params):
        return "a.txt\nb.txt"

    def search_files(params):
        return f"match for {params.get('regex', '')}"

    async def execute_command(params):
        return f"ran {params.get('command', '')}"

    async def continue_reasoning(params):
        return ""

    reg.register("read_file", read_file, "Read a file")
    reg.register("list_files", list_files, "List files")
    reg.register("search_files", search_files, "Search files")
    reg.register("execute_command", execute_command, "Run a command")
    reg.register("continue_reasoning", continue_reasoning, "Another round")
    return reg
