"""
Bounded retry for transient read-path failures (indexer / RPC flakiness).

This is NOT the statistical-bug loop in add_liquidity: that one has a
cleanup step and lives in the position manager.
"""
import asyncio
from typing import Awaitable, Callable, Optional, Type, TypeVar

T = TypeVar('T')


def retry_unless(*exc_types: Type[BaseException]) -> Callable[[BaseException], bool]:
    """Build a predicate that retries everything except the given exception types."""
    return lambda exc: not isinstance(exc, exc_types)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    label: str,
    max_attempts: int = 3,
    backoff: float = 1.0,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """Await `operation()` up to `max_attempts` times.

    Sleeps `backoff * 2**(n-1)` seconds after the n-th failure. Errors
    rejected by `should_retry` are raised immediately; otherwise the last
    error is re-raised once attempts run out.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if should_retry is not None and not should_retry(e):
                raise
            if attempt == max_attempts:
                print(f"✗ {label} failed after {attempt} attempt(s): {e}")
                raise
            delay = backoff * (2 ** (attempt - 1))
            print(f"⚠ {label} failed (attempt {attempt}/{max_attempts}): {e}, retrying in {delay:.1f}s")
            if delay > 0:
                await asyncio.sleep(delay)
