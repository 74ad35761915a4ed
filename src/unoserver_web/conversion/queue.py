import asyncio
from collections import deque
from typing import Awaitable, Callable, TypeVar

from .errors import ConversionAborted

T = TypeVar("T")


class AdmissionQueue:
    """FIFO scheduler that runs at most `concurrency` tasks at a time.

    Slots are handed directly from a finishing task to the oldest waiter, so
    `pending` never drops below the number of running tasks. A waiter whose
    cancellation event fires is dropped from the queue without running.
    """

    def __init__(self, concurrency: int) -> None:
        if concurrency < 0:
            raise ValueError("concurrency must be >= 0")
        self._concurrency = concurrency
        self._pending = 0
        self._paused = False
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def size(self) -> int:
        """Number of tasks waiting for a slot."""
        return sum(1 for w in self._waiters if not w.done())

    @property
    def pending(self) -> int:
        """Number of tasks currently running."""
        return self._pending

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def is_paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False
        self._wake()

    async def add(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        await self._acquire(cancel_event)
        try:
            return await fn()
        finally:
            self._release()

    async def _acquire(self, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ConversionAborted()
        if not self._paused and not self._waiters and self._pending < self._concurrency:
            self._pending += 1
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        cancel_wait: asyncio.Future | None = None
        try:
            if cancel_event is None:
                await fut
                return
            cancel_wait = asyncio.ensure_future(cancel_event.wait())
            await asyncio.wait({fut, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            if cancel_event.is_set():
                raise ConversionAborted()
        except BaseException:
            self._abandon(fut)
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

    def _abandon(self, fut: asyncio.Future[None]) -> None:
        if fut.done() and not fut.cancelled():
            # the slot was granted before we gave up on it
            self._release()
            return
        fut.cancel()
        try:
            self._waiters.remove(fut)
        except ValueError:
            pass

    def _release(self) -> None:
        self._pending -= 1
        self._wake()

    def _wake(self) -> None:
        while self._waiters and not self._paused and self._pending < self._concurrency:
            fut = self._waiters.popleft()
            if fut.done():
                continue
            self._pending += 1
            fut.set_result(None)
