"""
Bounded concurrency primitives for the sync pipeline.

- take_in_parallel: worker pool over a (sync or async) stream of work items,
  yielding results as they complete and never exceeding the limit.
- BoundedWritePool: semaphore-gated pool of fire-and-forget writes with
  backpressure and an explicit drain.

Both honour a shared ``asyncio.Event`` cancellation signal: once it is set no
new work is scheduled, while work already dispatched is allowed to finish.
"""
import asyncio
import logging
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Iterable,
    List,
    Optional,
    Set,
    TypeVar,
    Union,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def _is_cancelled(cancellation: Optional[asyncio.Event]) -> bool:
    return cancellation is not None and cancellation.is_set()


async def take_in_parallel(
    items: Union[Iterable[T], AsyncIterable[T]],
    concurrency: int,
    callback: Callable[[T], Awaitable[R]],
    cancellation: Optional[asyncio.Event] = None,
) -> AsyncIterator[R]:
    """
    Run ``callback`` over ``items`` with at most ``concurrency`` in flight.

    Results are yielded in completion order. If a callback raises, the
    cancellation event is set, in-flight callbacks are awaited, and the
    exception is re-raised to the consumer.

    Usage:
        async for result in take_in_parallel(files, 10, download):
            ...
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    if hasattr(items, "__aiter__"):
        source = items.__aiter__()

        async def next_item():
            return await source.__anext__()
    else:
        iterator = iter(items)

        async def next_item():
            try:
                return next(iterator)
            except StopIteration:
                raise StopAsyncIteration

    pending: Set[asyncio.Future] = set()
    exhausted = False

    try:
        while True:
            while not exhausted and len(pending) < concurrency and not _is_cancelled(cancellation):
                try:
                    item = await next_item()
                except StopAsyncIteration:
                    exhausted = True
                    break
                pending.add(asyncio.ensure_future(callback(item)))

            if not pending:
                break

            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                yield task.result()
    except BaseException:
        if cancellation is not None:
            cancellation.set()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        raise


async def iterate_in_parallel(results: AsyncIterable[Any]) -> None:
    """Consume an async iterable, discarding its values."""
    async for _ in results:
        pass


async def collect_in_parallel(
    items: Union[Iterable[T], AsyncIterable[T]],
    concurrency: int,
    callback: Callable[[T], Awaitable[R]],
    cancellation: Optional[asyncio.Event] = None,
) -> List[R]:
    """take_in_parallel, gathered into a list (completion order)."""
    return [result async for result in take_in_parallel(items, concurrency, callback, cancellation)]


class BoundedWritePool:
    """
    Fixed-capacity pool of outstanding writes.

    ``submit()`` waits for a free slot before scheduling, so a producer
    feeding writes faster than they complete is held back once
    ``capacity`` writes are in flight. The first write failure is re-raised
    by the next ``submit()`` or ``drain()``.
    """

    def __init__(self, capacity: int, cancellation: Optional[asyncio.Event] = None):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.cancellation = cancellation
        self._slots = asyncio.Semaphore(capacity)
        self._tasks: Set[asyncio.Future] = set()
        self._errors: List[BaseException] = []
        self.completed = 0
        self.peak_in_flight = 0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def _raise_pending_error(self) -> None:
        if self._errors:
            error = self._errors[0]
            self._errors.clear()
            if self.cancellation is not None:
                self.cancellation.set()
            raise error

    def _on_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        self._slots.release()
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._errors.append(error)
        else:
            self.completed += 1

    async def submit(self, write: Awaitable[Any]) -> None:
        """Schedule ``write`` once a slot is free."""
        if self._errors and asyncio.iscoroutine(write):
            write.close()
        self._raise_pending_error()
        await self._slots.acquire()
        task = asyncio.ensure_future(write)
        self._tasks.add(task)
        self.peak_in_flight = max(self.peak_in_flight, len(self._tasks))
        task.add_done_callback(self._on_done)

    async def drain(self) -> None:
        """Wait for every outstanding write."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._raise_pending_error()
