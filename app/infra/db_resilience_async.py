# app/infra/db_resilience_async.py
"""
Store-side resilience for asyncpg.

- ``is_transient_error``: is it worth trying again?
- ``retry_on_transient_error``: re-run an idempotent store method
- ``store_conn``: pooled connection whose driver failures surface as ``StoreUnavailable``
"""
from __future__ import annotations
import asyncio
from typing import AsyncIterator, Callable, Iterator
from contextlib import AsyncExitStack, asynccontextmanager
from functools import wraps

import asyncpg
from app.core.dispatch.errors import StoreUnavailable
from app.infra.db_async import PoolNotInitialized, db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Anything in here means the store cannot serve the request right now
STORE_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    PoolNotInitialized,
    OSError,
    asyncio.TimeoutError,
)

_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    asyncpg.PostgresConnectionError,
    asyncpg.TooManyConnectionsError,
    asyncpg.DeadlockDetectedError,
    asyncpg.SerializationError,
    ConnectionError,
    asyncio.TimeoutError,
)

_TRANSIENT_MARKERS = (
    "connection reset",
    "connection refused",
    "server closed",
    "too many connections",
    "timeout",
    "timed out",
    "deadlock",
    "network",
)

# Acquire retries for store_conn
_ACQUIRE_RETRIES = 3


def is_transient_error(exc: BaseException) -> bool:
    """
    True for failures that may go away on their own (lost connection,
    pool exhaustion, deadlock, timeout). A missing pool or a broken query
    is not transient.
    """
    if isinstance(exc, StoreUnavailable):
        cause = exc.__cause__
        return cause is not None and is_transient_error(cause)

    if isinstance(exc, PoolNotInitialized):
        return False

    if isinstance(exc, _TRANSIENT_TYPES):
        return True

    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def _delays(initial: float, factor: float, cap: float) -> Iterator[float]:
    delay = initial
    while True:
        yield delay
        delay = min(delay * factor, cap)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Retry an async store method on transient errors.

    The whole call is repeated, so only decorate idempotent operations:

        @retry_on_transient_error(max_retries=2)
        async def batch_mark_sent(self, ids, now): ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delays = _delays(initial_delay, backoff_factor, max_delay)
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    attempt += 1
                    if not is_transient_error(exc) or attempt > max_retries:
                        if attempt > max_retries:
                            logger.error(f"{func.__name__}: giving up after {max_retries} retries: {exc}")
                        raise

                    delay = next(delays)
                    logger.warning(
                        f"{func.__name__}: transient store error ({attempt}/{max_retries}), "
                        f"retrying in {delay:.2f}s: {exc}"
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator


async def _acquire(stack: AsyncExitStack, autocommit: bool) -> asyncpg.Connection:
    delays = _delays(0.1, 2.0, 5.0)
    attempt = 0
    while True:
        try:
            return await stack.enter_async_context(db_conn(autocommit=autocommit))
        except Exception as exc:
            attempt += 1
            if not is_transient_error(exc) or attempt > _ACQUIRE_RETRIES:
                raise
            delay = next(delays)
            logger.warning(f"Could not get a connection ({attempt}/{_ACQUIRE_RETRIES}), retrying in {delay:.2f}s: {exc}")
            await asyncio.sleep(delay)


@asynccontextmanager
async def store_conn(operation: str, autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Pooled connection for one store operation.

    Acquiring is retried on transient errors; errors in the body are not.
    Driver and network failures anywhere are re-raised as ``StoreUnavailable``
    tagged with ``operation``:

        async with store_conn("fetch_due") as conn:
            rows = await conn.fetch(...)
    """
    try:
        async with AsyncExitStack() as stack:
            yield await _acquire(stack, autocommit)
    except StoreUnavailable:
        raise
    except STORE_ERRORS as exc:
        raise StoreUnavailable(
            f"{operation} failed: {exc.__class__.__name__}: {exc}",
            operation=operation,
        ) from exc
