"""
Tests for the retry combinator.
"""
import pytest

from verdict.infrastructure.exceptions import CircuitOpenError, MalformedQuote, SourceTimeout, SourceUnavailable
from verdict.infrastructure.retry import RetryPolicy, retry_async

SOURCE_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    retry_on=(SourceUnavailable, SourceTimeout),
    never_retry=(CircuitOpenError,),
)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def _scripted(*outcomes):
    """Operation that raises / returns the scripted outcomes in order."""
    remaining = list(outcomes)
    calls = []

    async def _op():
        calls.append(1)
        outcome = remaining.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return _op, calls


class TestRetryPolicy:

    def test_exponential_delays_capped(self):
        policy = RetryPolicy(base_delay=1.0, backoff_factor=2.0, max_delay=10.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_never_retry_beats_retry_on(self):
        assert SOURCE_POLICY.should_retry(SourceTimeout("slow"))
        assert not SOURCE_POLICY.should_retry(CircuitOpenError("coingecko", "open"))
        assert not SOURCE_POLICY.should_retry(MalformedQuote("garbage"))


class TestRetryAsync:

    async def test_succeeds_after_transient_failures(self):
        op, calls = _scripted(SourceTimeout("t1"), SourceUnavailable("u1"), "quote")
        sleep = RecordingSleep()

        assert await retry_async(op, SOURCE_POLICY, sleep=sleep) == "quote"
        assert len(calls) == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_reraises_last_error_after_max_attempts(self):
        op, calls = _scripted(SourceTimeout("t1"), SourceTimeout("t2"), SourceTimeout("t3"))
        sleep = RecordingSleep()

        with pytest.raises(SourceTimeout, match="t3"):
            await retry_async(op, SOURCE_POLICY, sleep=sleep)
        assert len(calls) == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_non_retryable_error_raised_immediately(self):
        op, calls = _scripted(MalformedQuote("bad payload"), "never")
        sleep = RecordingSleep()

        with pytest.raises(MalformedQuote):
            await retry_async(op, SOURCE_POLICY, sleep=sleep)
        assert len(calls) == 1
        assert sleep.delays == []

    async def test_open_circuit_is_not_retried(self):
        op, calls = _scripted(CircuitOpenError("coingecko", "open"), "never")

        with pytest.raises(CircuitOpenError):
            await retry_async(op, SOURCE_POLICY, sleep=RecordingSleep())
        assert len(calls) == 1

    async def test_delay_cap_applies(self):
        policy = RetryPolicy(max_attempts=4, base_delay=4.0, max_delay=5.0)
        op, _ = _scripted(RuntimeError("a"), RuntimeError("b"), RuntimeError("c"), "done")
        sleep = RecordingSleep()

        assert await retry_async(op, policy, sleep=sleep) == "done"
        assert sleep.delays == [4.0, 5.0, 5.0]
