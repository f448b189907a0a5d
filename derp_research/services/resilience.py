# =============================================================================
# Resilience — Retries, Timeouts and Circuit Breaking for Outbound Calls
# =============================================================================
#
# Wraps the web search provider and the LLM provider so that a transient
# failure (network blip, 5xx, rate limit, slow response) is retried a bounded
# number of times with exponential backoff before the caller sees it.
#
# ARCHITECTURE:
#   RetryPolicy              — attempts, per-attempt timeout, backoff curve
#   CircuitBreaker           — closed → open after N failures → half-open
#   call_with_retries()      — runs one awaitable factory under both
#   ResilientSearchProvider  — SearchProvider wrapper
#   ResilientLLMProvider     — LLMProvider wrapper (complete + stream)
#
# STREAMING:
#   A stream is only retried until its first token arrives. Once a token has
#   been yielded, a later failure propagates to the consumer.
#
# ERROR CONTRACT:
#   - The last attempt's exception propagates unchanged.
#   - A timed-out attempt surfaces as TimeoutError.
#   - While the breaker is open, calls fail fast with CircuitOpenError.
#   - Cancellation is never retried.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import TypeVar

from derp_research.config import Settings
from derp_research.models.research import SearchResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitOpenError(RuntimeError):
    """Raised instead of calling a dependency whose breaker is open."""


# ---------------------------------------------------------------------------
# Policy and Breaker
# ---------------------------------------------------------------------------


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    timeout_seconds: float | None = None
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    def delay(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based)."""
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)


class CircuitBreaker:
    """
    Counts consecutive failures of one dependency.

    After `failure_threshold` failures in a row the breaker opens and every
    call is refused for `reset_seconds`. The first call after that is let
    through (half-open): success closes the breaker, failure re-opens it.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._threshold = max(1, failure_threshold)
        self._reset_seconds = reset_seconds
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None
        self._state = self.CLOSED

    @property
    def state(self) -> str:
        if self._state == self.OPEN and self._clock() - self._opened_at >= self._reset_seconds:
            self._state = self.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state != self.OPEN

    def record_success(self) -> None:
        if self._state != self.CLOSED:
            logger.info("Circuit '%s' closed", self.name)
        self._failures = 0
        self._opened_at = None
        self._state = self.CLOSED

    def record_failure(self) -> None:
        self._failures += 1
        if self.state == self.HALF_OPEN or self._failures >= self._threshold:
            if self._state != self.OPEN:
                logger.warning(
                    "Circuit '%s' opened after %d failures", self.name, self._failures
                )
            self._state = self.OPEN
            self._opened_at = self._clock()

    def check(self) -> None:
        if not self.allow_request():
            raise CircuitOpenError(f"{self.name} is temporarily unavailable")


# ---------------------------------------------------------------------------
# Retry Loop
# ---------------------------------------------------------------------------


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    breaker: CircuitBreaker | None = None,
    description: str = "call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await `operation()` up to policy.max_attempts times."""
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        if breaker is not None:
            breaker.check()
        try:
            async with asyncio.timeout(policy.timeout_seconds):
                result = await operation()
        except Exception as exc:
            if breaker is not None:
                breaker.record_failure()
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", description, attempts, exc)
                raise
            delay = policy.delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                description, attempt, attempts, delay, exc,
            )
            await sleep(delay)
        else:
            if breaker is not None:
                breaker.record_success()
            return result
    raise AssertionError("unreachable")


# ---------------------------------------------------------------------------
# Provider Wrappers
# ---------------------------------------------------------------------------


class ResilientSearchProvider:
    """SearchProvider with retries, a per-request timeout and a breaker."""

    def __init__(
        self,
        inner,
        policy: RetryPolicy,
        breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._inner = inner
        self._policy = policy
        self._breaker = breaker
        self._sleep = sleep
        self.name = inner.name

    async def search(self, query: str, max_results: int) -> list[SearchResult]:
        return await call_with_retries(
            lambda: self._inner.search(query, max_results),
            self._policy,
            self._breaker,
            description=f"Search '{query}' via {self.name}",
            sleep=self._sleep,
        )


class ResilientLLMProvider:
    """LLMProvider with retries, per-call timeouts and a breaker."""

    def __init__(
        self,
        inner,
        policy: RetryPolicy,
        breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._inner = inner
        self._policy = policy
        self._breaker = breaker
        self._sleep = sleep

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        return await call_with_retries(
            lambda: self._inner.complete(
                messages, system=system, temperature=temperature, max_tokens=max_tokens
            ),
            self._policy,
            self._breaker,
            description="LLM completion",
            sleep=self._sleep,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """
        Yield tokens from the wrapped stream.

        The timeout applies to each wait for the next token, so a long answer
        that keeps producing tokens is never cut off.
        """
        attempts = max(1, self._policy.max_attempts)
        for attempt in range(1, attempts + 1):
            if self._breaker is not None:
                self._breaker.check()
            tokens = self._inner.stream(
                messages, system=system, temperature=temperature, max_tokens=max_tokens
            )
            async with aclosing(tokens):
                try:
                    async with asyncio.timeout(self._policy.timeout_seconds):
                        first = await anext(tokens)
                except StopAsyncIteration:
                    self._record_success()
                    return
                except Exception as exc:
                    self._record_failure()
                    if attempt == attempts:
                        logger.error("LLM stream failed after %d attempts: %s", attempts, exc)
                        raise
                    delay = self._policy.delay(attempt)
                    logger.warning(
                        "LLM stream failed to start (attempt %d/%d), retrying in %.1fs: %s",
                        attempt, attempts, delay, exc,
                    )
                    await self._sleep(delay)
                    continue

                yield first
                while True:
                    try:
                        async with asyncio.timeout(self._policy.timeout_seconds):
                            token = await anext(tokens)
                    except StopAsyncIteration:
                        break
                    except Exception:
                        self._record_failure()
                        raise
                    yield token
            self._record_success()
            return

    def _record_success(self) -> None:
        if self._breaker is not None:
            self._breaker.record_success()

    def _record_failure(self) -> None:
        if self._breaker is not None:
            self._breaker.record_failure()


# ---------------------------------------------------------------------------
# Factory Helpers
# ---------------------------------------------------------------------------


def search_policy(config: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.search_max_retries + 1,
        timeout_seconds=config.search_timeout_seconds,
        backoff_base_seconds=config.retry_backoff_base_seconds,
        backoff_max_seconds=config.retry_backoff_max_seconds,
    )


def llm_policy(config: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.llm_max_retries + 1,
        timeout_seconds=config.llm_timeout_seconds,
        backoff_base_seconds=config.retry_backoff_base_seconds,
        backoff_max_seconds=config.retry_backoff_max_seconds,
    )


def breaker_for(name: str, config: Settings) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        failure_threshold=config.circuit_failure_threshold,
        reset_seconds=config.circuit_reset_seconds,
    )
