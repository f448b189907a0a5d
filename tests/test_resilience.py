# =============================================================================
# Unit Tests — Retries, Timeouts and Circuit Breaking
# =============================================================================
#
# Backoff sleeps are recorded instead of awaited so the tests run instantly.
# =============================================================================

from __future__ import annotations

import asyncio

import pytest

from derp_research.config import Settings
from derp_research.models.research import SearchResult
from derp_research.services.llm import LLMResponse
from derp_research.services.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    ResilientLLMProvider,
    ResilientSearchProvider,
    RetryPolicy,
    call_with_retries,
    search_policy,
)
from derp_research.services.search_gateway import (
    SearchGateway,
    create_search_provider,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


async def _collect(stream):
    return [token async for token in stream]


class Sleeps:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FlakySearch:
    """Fails the first `failures` calls, then answers."""

    name = "flaky"

    def __init__(self, failures=1, error=None):
        self.calls = 0
        self._failures = failures
        self._error = error or ConnectionError("connection reset")

    async def search(self, query, max_results):
        self.calls += 1
        if self.calls <= self._failures:
            raise self._error
        return [
            SearchResult(title=f"r{i}", url=f"https://r{i}.example", snippet="s")
            for i in range(max_results)
        ]


class FlakyLLM:
    def __init__(self, failures=1, tokens=("Hello", " world")):
        self.calls = 0
        self.closed = 0
        self._failures = failures
        self._tokens = tokens

    async def complete(self, messages, system=None, temperature=None, max_tokens=None):
        self.calls += 1
        if self.calls <= self._failures:
            raise ConnectionError("upstream 503")
        return LLMResponse(content="ok", model="fake", input_tokens=1, output_tokens=1)

    async def stream(self, messages, system=None, temperature=None, max_tokens=None):
        self.calls += 1
        try:
            if self.calls <= self._failures:
                raise ConnectionError("upstream 503")
            for token in self._tokens:
                yield token
        finally:
            self.closed += 1


POLICY = RetryPolicy(max_attempts=3, timeout_seconds=1.0, backoff_base_seconds=0.5)


# ---------------------------------------------------------------------------
# 1. RetryPolicy / call_with_retries
# ---------------------------------------------------------------------------


class TestCallWithRetries:
    def test_backoff_doubles_and_is_capped(self):
        policy = RetryPolicy(backoff_base_seconds=1.0, backoff_max_seconds=3.0)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]

    def test_transient_failure_then_success(self):
        sleeps = Sleeps()
        calls = []

        async def operation():
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("blip")
            return "done"

        assert _run(call_with_retries(operation, POLICY, sleep=sleeps)) == "done"
        assert len(calls) == 2
        assert sleeps.delays == [0.5]

    def test_exhausted_attempts_reraise_last_error(self):
        sleeps = Sleeps()

        async def operation():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            _run(call_with_retries(operation, POLICY, sleep=sleeps))
        assert sleeps.delays == [0.5, 1.0]

    def test_slow_attempt_times_out_and_is_retried(self):
        sleeps = Sleeps()
        calls = []

        async def operation():
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(10)
            return "fast"

        policy = RetryPolicy(max_attempts=2, timeout_seconds=0.05)
        assert _run(call_with_retries(operation, policy, sleep=sleeps)) == "fast"
        assert len(calls) == 2

    def test_timeout_on_last_attempt_raises(self):
        async def operation():
            await asyncio.sleep(10)

        policy = RetryPolicy(max_attempts=1, timeout_seconds=0.05)
        with pytest.raises(TimeoutError):
            _run(call_with_retries(operation, policy))


# ---------------------------------------------------------------------------
# 2. CircuitBreaker
# ---------------------------------------------------------------------------


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("dep", failure_threshold=3, reset_seconds=30, clock=Clock())
        for _ in range(2):
            breaker.record_failure()
        assert breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == CircuitBreaker.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.check()

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("dep", failure_threshold=2, clock=Clock())
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitBreaker.CLOSED

    def test_half_open_after_reset_period(self):
        clock = Clock()
        breaker = CircuitBreaker("dep", failure_threshold=1, reset_seconds=30, clock=clock)
        breaker.record_failure()
        assert not breaker.allow_request()

        clock.now += 30
        assert breaker.state == CircuitBreaker.HALF_OPEN
        assert breaker.allow_request()

        breaker.record_success()
        assert breaker.state == CircuitBreaker.CLOSED

    def test_failure_while_half_open_reopens(self):
        clock = Clock()
        breaker = CircuitBreaker("dep", failure_threshold=5, reset_seconds=30, clock=clock)
        for _ in range(5):
            breaker.record_failure()
        clock.now += 31

        breaker.record_failure()

        assert breaker.state == CircuitBreaker.OPEN

    def test_open_breaker_skips_the_call(self):
        breaker = CircuitBreaker("dep", failure_threshold=1, clock=Clock())
        breaker.record_failure()
        calls = []

        async def operation():
            calls.append(1)

        with pytest.raises(CircuitOpenError):
            _run(call_with_retries(operation, POLICY, breaker, sleep=Sleeps()))
        assert calls == []


# ---------------------------------------------------------------------------
# 3. Search provider wrapper
# ---------------------------------------------------------------------------


class TestResilientSearchProvider:
    def test_one_transient_failure_still_returns_results(self, session_factory):
        inner = FlakySearch(failures=1)
        provider = ResilientSearchProvider(inner, POLICY, sleep=Sleeps())
        gateway = SearchGateway(provider, session_factory, ttl_seconds=3600)

        results = _run(gateway.search("tides", 3))

        assert [r.url for r in results] == [f"https://r{i}.example" for i in range(3)]
        assert inner.calls == 2

    def test_persistent_failure_propagates_and_is_not_cached(self, session_factory):
        inner = FlakySearch(failures=10)
        provider = ResilientSearchProvider(inner, POLICY, sleep=Sleeps())
        gateway = SearchGateway(provider, session_factory, ttl_seconds=3600)

        with pytest.raises(ConnectionError):
            _run(gateway.search("tides", 3))
        assert inner.calls == 3

        inner._failures = 0
        assert len(_run(gateway.search("tides", 3))) == 3

    def test_keeps_provider_name(self):
        provider = ResilientSearchProvider(FlakySearch(), POLICY)
        assert provider.name == "flaky"

    def test_factory_wraps_google(self):
        config = Settings(
            _env_file=None,
            search_provider="google",
            google_api_key="key",
            google_search_engine_id="cx",
            search_max_retries=4,
        )
        provider = create_search_provider(config)
        assert isinstance(provider, ResilientSearchProvider)
        assert provider.name == "google"
        assert search_policy(config).max_attempts == 5


# ---------------------------------------------------------------------------
# 4. LLM provider wrapper
# ---------------------------------------------------------------------------


class TestResilientLLMProvider:
    def test_complete_retries_transient_failure(self):
        inner = FlakyLLM(failures=1)
        llm = ResilientLLMProvider(inner, POLICY, sleep=Sleeps())

        response = _run(llm.complete([{"role": "user", "content": "hi"}]))

        assert response.content == "ok"
        assert inner.calls == 2

    def test_stream_retries_before_first_token(self):
        inner = FlakyLLM(failures=1)
        llm = ResilientLLMProvider(inner, POLICY, sleep=Sleeps())

        tokens = _run(_collect(llm.stream([{"role": "user", "content": "hi"}])))

        assert tokens == ["Hello", " world"]
        assert inner.calls == 2
        assert inner.closed == 2

    def test_stream_failure_after_first_token_propagates(self):
        class Breaks:
            calls = 0

            async def stream(self, messages, system=None, temperature=None, max_tokens=None):
                self.calls += 1
                yield "partial"
                raise ConnectionError("dropped")

        inner = Breaks()
        llm = ResilientLLMProvider(inner, POLICY, sleep=Sleeps())
        seen = []

        async def consume():
            async for token in llm.stream([{"role": "user", "content": "hi"}]):
                seen.append(token)

        with pytest.raises(ConnectionError):
            _run(consume())
        assert seen == ["partial"]
        assert inner.calls == 1

    def test_stalled_stream_times_out(self):
        class Stalls:
            async def stream(self, messages, system=None, temperature=None, max_tokens=None):
                yield "first"
                await asyncio.sleep(10)
                yield "never"

        llm = ResilientLLMProvider(Stalls(), RetryPolicy(max_attempts=1, timeout_seconds=0.05))

        with pytest.raises(TimeoutError):
            _run(_collect(llm.stream([{"role": "user", "content": "hi"}])))

    def test_closing_consumer_closes_inner_stream(self):
        inner = FlakyLLM(failures=0, tokens=("a", "b", "c"))
        llm = ResilientLLMProvider(inner, POLICY)

        async def take_one():
            stream = llm.stream([{"role": "user", "content": "hi"}])
            first = await anext(stream)
            await stream.aclose()
            return first

        assert _run(take_one()) == "a"
        assert inner.closed == 1
