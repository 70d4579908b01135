"""Single-shot cancellation signal shared between a send and its observers."""

from __future__ import annotations

import asyncio
import contextlib
import threading


class CancellationToken:
    """Externally triggerable flag that an in-flight send can await.

    ``cancel()`` may be called from any thread, any number of times; only the
    first call has an effect. Waiters on other event loops are woken through
    ``call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"

    # Copies of a request share the token of the request they came from
    def __copy__(self) -> CancellationToken:
        return self

    def __deepcopy__(self, memo: dict) -> CancellationToken:
        return self

    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            waiters, self._waiters = self._waiters, []

        for loop, future in waiters:
            # The loop may already be gone if its send finished long ago
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(_resolve, future)

    async def cancelled(self) -> None:
        """Return once the token has been cancelled."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        with self._lock:
            if self._cancelled:
                return
            self._waiters.append((loop, future))

        try:
            await future
        finally:
            with self._lock:
                if (loop, future) in self._waiters:
                    self._waiters.remove((loop, future))


def _resolve(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)
