"""Bounded-concurrency runner plus timeout / retry wrappers for async callables.

Nothing in here knows about products or runs:

    run_limited(tasks, limit)        - at most `limit` awaitables in flight
    with_timeout(fn, deadline, ...)  - per-call deadline, cancels the call
    with_retry(fn, policy, ...)      - fixed-delay retry for selected failures
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, Type, TypeVar


T = TypeVar("T")

TaskFactory = Callable[[], Awaitable[T]]


@dataclass(frozen=True)
class Settled(Generic[T]):
    """Outcome of one task run through the limiter."""

    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None


async def run_limited(tasks: Iterable[TaskFactory[T]], limit: int) -> List[Settled[T]]:
    """Run task factories with at most `limit` executing at once.

    A task starts as soon as a slot frees.  Exceptions are captured into
    Settled(ok=False) so one failure never cancels its siblings; result i
    always belongs to task i.  Cancelling the caller cancels all workers.
    """
    if limit <= 0:
        raise ValueError(f"limit must be a positive integer, got {limit!r}")

    source = iter(enumerate(tasks))
    results: Dict[int, Settled[T]] = {}

    async def worker() -> None:
        # Pulling from a shared iterator lets a freed worker take the next
        # task immediately, whatever the total count turns out to be.
        for index, factory in source:
            try:
                value = await factory()
            except Exception as exc:
                results[index] = Settled(ok=False, error=exc)
            else:
                results[index] = Settled(ok=True, value=value)

    await asyncio.gather(*(worker() for _ in range(limit)))
    return [results[i] for i in range(len(results))]


def with_timeout(
    fn: Callable[..., Awaitable[T]],
    deadline: float,
    error: Type[BaseException] = TimeoutError,
) -> Callable[..., Awaitable[T]]:
    """Wrap `fn` so each call is cancelled after `deadline` seconds.

    The expiry surfaces as `error(message)` instead of asyncio's bare
    TimeoutError so callers can keep their own exception taxonomy.
    """

    async def wrapped(*args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(fn(*args, **kwargs), timeout=deadline)
        except asyncio.TimeoutError:
            raise error(f"call exceeded {deadline:g}s deadline") from None

    return wrapped


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 2
    delay: float = 2.0
    retryable: Callable[[BaseException], bool] = lambda exc: True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")


def with_retry(
    fn: Callable[..., Awaitable[T]],
    policy: RetryPolicy,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> Callable[..., Awaitable[T]]:
    """Wrap `fn` so retryable failures are re-attempted after `policy.delay`.

    `on_retry(attempt, exc)` is called before each sleep with the 1-based
    number of the attempt that just failed.  The last failure is re-raised.
    """

    async def wrapped(*args: Any, **kwargs: Any) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn(*args, **kwargs)
            except Exception as exc:
                if attempt >= policy.max_attempts or not policy.retryable(exc):
                    raise
                if on_retry is not None:
                    on_retry(attempt, exc)
                await asyncio.sleep(policy.delay)

    return wrapped
