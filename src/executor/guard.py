"""Timeout and cancellation guard for stage attempts.

A run owns one CancellationToken. Every stage attempt runs under
`run_guarded()`, which races the attempt against both the stage's timeout
and the token. Whichever fires first wins; the loser's in-flight work is
cancelled and its eventual result discarded.

Timeout and explicit cancellation share this one mechanism, so a cancel
request aborts an in-flight provider call exactly like a timeout does.
"""

import asyncio
import logging
import threading
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RunCancelledError(InterruptedError):
    """Raised inside a run once cancellation has been requested."""


class StageTimeoutError(TimeoutError):
    """Raised when a guarded attempt exceeds its timeout."""

    def __init__(self, label: str, timeout: float):
        super().__init__(f"{label} timed out after {timeout:g}s".strip())
        self.label = label
        self.timeout = timeout


class CancellationToken:
    """Cooperative cancellation handle for a single run.

    `cancel()` is safe to call from any thread (an HTTP handler, a
    disconnect callback). Waiters on any event loop are woken.
    """

    def __init__(self):
        self._cancelled = False
        self._lock = threading.Lock()
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def cancel(self) -> bool:
        """Signal cancellation. Returns False if it was already signalled."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            waiters = list(self._waiters)
            self._waiters.clear()

        for loop, event in waiters:
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(event.set)
        return True

    def raise_if_cancelled(self, label: str = "") -> None:
        if self.cancelled:
            raise RunCancelledError(f"{label} cancelled".strip())

    async def wait(self) -> None:
        """Block until cancellation is signalled."""
        event = asyncio.Event()
        entry = (asyncio.get_running_loop(), event)
        with self._lock:
            if self._cancelled:
                return
            self._waiters.append(entry)
        try:
            await event.wait()
        finally:
            with self._lock:
                if entry in self._waiters:
                    self._waiters.remove(entry)


def _discard_result(task: asyncio.Future) -> None:
    # Retrieve the abandoned attempt's outcome so asyncio does not warn
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Abandoned attempt finished with {type(error).__name__}: {error}")


async def run_guarded(
    operation: Callable[[], Awaitable[T]],
    *,
    timeout: Optional[float],
    token: Optional[CancellationToken] = None,
    label: str = "",
) -> T:
    """Run `operation` under a timeout and the run's cancellation token.

    Raises:
        RunCancelledError: The token fired first (or had already fired)
        StageTimeoutError: `timeout` seconds elapsed first (never when
            `timeout` is None)
    """
    if token is not None:
        token.raise_if_cancelled(label)

    work = asyncio.ensure_future(operation())
    waiters = {work}
    cancel_waiter = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    if work in done:
        return work.result()

    work.cancel()
    work.add_done_callback(_discard_result)

    if cancel_waiter is not None and cancel_waiter in done:
        logger.info(f"{label} Cancelled while in flight, abandoning attempt")
        raise RunCancelledError(f"{label} cancelled".strip())

    logger.warning(f"{label} Exceeded timeout of {timeout:g}s, abandoning attempt")
    raise StageTimeoutError(label, timeout)
