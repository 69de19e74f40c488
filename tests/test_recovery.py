"""Tests for conductor.recovery: retry, backoff, cleanup and failure history."""

import pytest

from conductor.errors import CapabilityError, ProviderError, TaskCancelledError
from conductor.outcomes import FatalError, Ok, RetryableError
from conductor.recovery import ActionCategory, RecoverySupervisor, RetryPolicy


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _always_failing(message, exc_type=ConnectionError):
    calls = []

    async def fn():
        calls.append(True)
        raise exc_type(message)

    return fn, calls


class TestRetryPolicy:
    def test_delay_progression_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, backoff_multiplier=2.0)
        assert [policy.delay_for(i) for i in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


class TestRetryLoop:
    @pytest.mark.asyncio
    async def test_transient_failure_exhausts_retries(self, fake_sleep):
        results = []
        supervisor = RecoverySupervisor(RetryPolicy(max_retries=3), sleep=fake_sleep, on_recovery=results.append)
        fn, calls = _always_failing("ECONNRESET")

        outcome = await supervisor.run("tool:read_file", fn, category=ActionCategory.TOOL_EXECUTION,
                                       tool_name="read_file")

        assert isinstance(outcome, RetryableError)
        assert outcome.attempts == 4
        assert len(calls) == 4
        assert fake_sleep.delays == [1.0, 2.0, 4.0]
        assert [r.should_retry for r in results] == [True, True, True, False]
        assert results[-1].message == "Max retries (3) reached for: tool:read_file"
        assert results[-1].cleanup_performed is True

    @pytest.mark.asyncio
    async def test_delays_respect_max_delay(self, fake_sleep):
        supervisor = RecoverySupervisor(
            RetryPolicy(max_retries=5, base_delay=1.0, max_delay=5.0, backoff_multiplier=3.0), sleep=fake_sleep
        )
        fn, _ = _always_failing("connection timed out")
        await supervisor.run("api_request", fn)
        assert fake_sleep.delays == [1.0, 3.0, 5.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_success_after_transient_failures(self, supervisor, fake_sleep):
        attempts = []

        async def flaky():
            attempts.append(True)
            if len(attempts) < 3:
                raise ProviderError("upstream overloaded", status_code=503)
            return "ok"

        assert await supervisor.run("api_request", flaky) == Ok("ok")
        assert fake_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, supervisor, fake_sleep):
        fn, calls = _always_failing("bad input", ValueError)
        outcome = await supervisor.run("tool:read_file", fn)
        assert outcome == FatalError("bad input")
        assert len(calls) == 1
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_fatal_codes_are_never_retried(self, supervisor, fake_sleep):
        fn, calls = _always_failing("command timed out", CapabilityError)
        outcome = await supervisor.run("tool:execute_command", fn)
        assert isinstance(outcome, FatalError)
        assert outcome.code == "CAPABILITY_FAILED"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, supervisor):
        fn, calls = _always_failing("bad request", lambda m: ProviderError(m, status_code=400))
        outcome = await supervisor.run("api_request", fn)
        assert outcome == FatalError("HTTP 400 Bad Request: bad request", code="PROVIDER_FAILED")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_execute_reraises_original_error(self, supervisor):
        fn, _ = _always_failing("ECONNRESET")
        with pytest.raises(ConnectionError, match="ECONNRESET"):
            await supervisor.execute("api_request", fn)

    @pytest.mark.asyncio
    async def test_cancellation_is_not_retried(self, supervisor, fake_sleep):
        fn, calls = _always_failing("cancelled", TaskCancelledError)
        with pytest.raises(TaskCancelledError):
            await supervisor.run("api_request", fn)
        assert len(calls) == 1
        assert supervisor.history == []

    @pytest.mark.asyncio
    async def test_custom_signatures(self, fake_sleep):
        supervisor = RecoverySupervisor(RetryPolicy(max_retries=1, retryable_errors=("flaky disk",)),
                                        sleep=fake_sleep)
        fn, calls = _always_failing("Flaky Disk detected", OSError)
        await supervisor.run("generic", fn)
        assert len(calls) == 2

        fn, calls = _always_failing("ECONNRESET")
        await supervisor.run("generic", fn)
        assert len(calls) == 1


class TestCleanup:
    @pytest.mark.asyncio
    async def test_cleanup_failure_is_reported(self, supervisor):
        def broken(record):
            raise RuntimeError("cleanup broke")

        supervisor.register_cleanup(ActionCategory.FILE_OPERATION, broken)
        result = await supervisor.handle_error("tool:write_to_file", ValueError("nope"),
                                               category=ActionCategory.FILE_OPERATION)
        assert result.should_retry is False
        assert result.cleanup_performed is False
        assert result.message == "Non-retryable error: nope"

    @pytest.mark.asyncio
    async def test_custom_hook_runs(self, supervisor):
        seen = []

        async def hook(record):
            seen.append(record.tool_name)

        supervisor.register_cleanup(ActionCategory.COMMAND_EXECUTION, hook)
        await supervisor.handle_error("tool:execute_command", ValueError("x"),
                                      category=ActionCategory.COMMAND_EXECUTION, tool_name="execute_command")
        assert seen == ["execute_command"]

    @pytest.mark.asyncio
    async def test_no_cleanup_while_retrying(self, supervisor):
        result = await supervisor.handle_error("api_request", ConnectionError("ECONNRESET"), attempt=0)
        assert result.should_retry is True
        assert result.cleanup_performed is False
        assert result.message.startswith("Retryable error. Retrying in 1.00s")


class TestHistory:
    @pytest.mark.asyncio
    async def test_stats(self, fake_sleep):
        clock = FakeClock()
        supervisor = RecoverySupervisor(RetryPolicy(max_retries=1), sleep=fake_sleep, clock=clock)
        fn, _ = _always_failing("ECONNRESET")
        await supervisor.run("api_request", fn)
        fn, _ = _always_failing("nope", ValueError)
        await supervisor.run("tool:read_file", fn)

        stats = supervisor.error_stats()
        assert stats["total_errors"] == 3
        assert stats["errors_by_action"] == {"api_request": 2, "tool:read_file": 1}
        assert stats["errors_by_type"] == {"ConnectionError": 2, "ValueError": 1}
        assert stats["retry_rate"] == pytest.approx(100 / 3)
        assert len(stats["recent_errors"]) == 3

    @pytest.mark.asyncio
    async def test_windows_and_pruning(self, fake_sleep):
        clock = FakeClock()
        supervisor = RecoverySupervisor(RetryPolicy(max_retries=0), sleep=fake_sleep, clock=clock)
        fn, _ = _always_failing("nope", ValueError)
        for _ in range(3):
            await supervisor.run("api_request", fn)
        assert supervisor.recent_retry_count("api_request") == 3
        assert supervisor.has_too_many_recent_errors(threshold=3)
        assert not supervisor.has_too_many_recent_errors(threshold=4)

        clock.now += 120
        assert supervisor.recent_retry_count("api_request") == 0
        assert supervisor.has_too_many_recent_errors(threshold=3)

        clock.now += 4000
        assert not supervisor.has_too_many_recent_errors(threshold=1)
        assert supervisor.prune_history() == 3
        assert supervisor.history == []

    @pytest.mark.asyncio
    async def test_history_limit(self, fake_sleep):
        supervisor = RecoverySupervisor(RetryPolicy(max_retries=0), sleep=fake_sleep, history_limit=5)
        fn, _ = _always_failing("nope", ValueError)
        for _ in range(8):
            await supervisor.run("api_request", fn)
        assert len(supervisor.history) == 5

    @pytest.mark.asyncio
    async def test_on_error_callback_failure_is_contained(self, fake_sleep):
        def broken(record):
            raise RuntimeError("listener down")

        supervisor = RecoverySupervisor(sleep=fake_sleep, on_error=broken)
        fn, _ = _always_failing("nope", ValueError)
        assert isinstance(await supervisor.run("api_request", fn), FatalError)


class TestFormatting:
    def test_status_attribute(self):
        error = ProviderError("slow down", status_code=429)
        assert RecoverySupervisor.format_error_with_status(error) == "HTTP 429 Too Many Requests: slow down"

    def test_status_in_message(self):
        error = RuntimeError("request failed status code: 502")
        assert RecoverySupervisor.format_error_with_status(error) == (
            "HTTP 502 Bad Gateway: request failed status code: 502"
        )

    def test_unknown_status_text(self):
        error = ProviderError("teapot", status_code=418)
        assert RecoverySupervisor.format_error_with_status(error) == "HTTP 418 Unknown Error: teapot"

    def test_plain_error(self):
        assert RecoverySupervisor.format_error_with_status(ValueError("plain")) == "plain"
        assert RecoverySupervisor.format_error_with_status(ValueError()) == "ValueError"
