"""
Cancellation primitives.

Responsibilities:
- One-shot cancellation tokens carrying the reason they fired
- Deadline timers that fire a token with a timeout error
- Racing an awaitable against a token

Non-responsibilities:
- NO retry logic
- NO decisions about what happens after a cancellation

This module is infrastructure only.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from adapters.asr.errors import AbortedError, OperationTimeoutError

T = TypeVar("T")


# ---------------------------------------------------------------------
# Token
# ---------------------------------------------------------------------

class CancelToken:
    """
    Cooperative cancellation signal.

    Fires at most once. Callees may poll `cancelled`, call
    `raise_if_cancelled()`, or await `wait()`.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: BaseException | None = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> BaseException | None:
        return self._reason

    def cancel(self, reason: BaseException | None = None) -> None:
        """Fire the token. Later calls keep the first reason."""
        if self._reason is not None:
            return
        self._reason = reason if reason is not None else AbortedError()
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise self._reason

    async def wait(self) -> BaseException:
        await self._event.wait()
        assert self._reason is not None
        return self._reason


def arm_timeout(token: CancelToken, timeout_ms: float, *, operation: str) -> asyncio.TimerHandle:
    """
    Fire `token` with an OperationTimeoutError after `timeout_ms`.

    The caller cancels the returned handle once the guarded work settles.
    """
    loop = asyncio.get_running_loop()
    return loop.call_later(
        max(0.0, timeout_ms) / 1000.0,
        lambda: token.cancel(OperationTimeoutError(operation, timeout_ms)),
    )


# ---------------------------------------------------------------------
# Racing
# ---------------------------------------------------------------------

async def run_cancellable(awaitable: Awaitable[T], token: CancelToken | None) -> T:
    """
    Await `awaitable` unless `token` fires first.

    If the token wins, the underlying work is cancelled and the token's
    reason is raised. With no token this is a plain await.
    """
    if token is None:
        return await awaitable

    work: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    if token.cancelled:
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        token.raise_if_cancelled()

    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        waiter.cancel()
        raise

    if work in done:
        waiter.cancel()
        return work.result()

    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    reason = token.reason
    assert reason is not None
    raise reason
