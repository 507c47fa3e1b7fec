"""Bounded buffers that block producers when full and consumers when empty.

Two strategies share one contract:

* ``ConditionBuffer`` guards a deque with a single ``threading.Condition``.
* ``QueueBuffer`` delegates to the standard library's ``queue.Queue``.

Both accept an optional ``CancellationToken`` on ``put``/``take`` so a blocked
caller can be released without touching the buffer contents.
"""
from __future__ import annotations

import logging
import queue
import time
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from threading import Condition, Event, Lock
from typing import Callable, Deque, Generic, Iterator, List, Optional, TypeVar, Union

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.05


class InvalidConfiguration(ValueError):
    """Raised when a buffer or simulation is built with unusable settings."""


class Cancelled(RuntimeError):
    """Raised when a blocking put/take is aborted by its cancellation token."""


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and its waits.

    Buffers register a wake-up callback while they wait so that ``cancel()``
    releases a blocked caller instead of leaving it asleep until the next
    put/take.
    """

    def __init__(self) -> None:
        self._event = Event()
        self._lock = Lock()
        self._callbacks: List[Callable[[], None]] = []

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds; return True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("operation cancelled")

    @contextmanager
    def wake_on_cancel(self, callback: Callable[[], None]) -> Iterator[None]:
        with self._lock:
            self._callbacks.append(callback)
        try:
            yield
        finally:
            with self._lock:
                self._callbacks.remove(callback)


@dataclass(frozen=True)
class BufferSnapshot:
    """Occupancy read in one lock acquisition."""

    size: int
    capacity: int

    @property
    def is_empty(self) -> bool:
        return self.size == 0

    @property
    def is_full(self) -> bool:
        return self.size >= self.capacity


def _check_capacity(capacity: int) -> int:
    if isinstance(capacity, bool) or not isinstance(capacity, int):
        raise InvalidConfiguration(f"capacity must be an int, got {capacity!r}")
    if capacity <= 0:
        raise InvalidConfiguration(f"capacity must be positive, got {capacity}")
    return capacity


def _deadline(timeout: Optional[float]) -> Optional[float]:
    return time.monotonic() + timeout if timeout is not None else None


def _remaining(end_time: Optional[float]) -> Optional[float]:
    return None if end_time is None else end_time - time.monotonic()


class BoundedBuffer(ABC, Generic[T]):
    """FIFO buffer with a fixed capacity shared by producer and consumer threads."""

    strategy: str = ""

    def __init__(self, capacity: int) -> None:
        self._capacity = _check_capacity(capacity)

    @abstractmethod
    def put(
        self,
        item: T,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        """Append ``item``, waiting for space."""

    @abstractmethod
    def take(
        self,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> T:
        """Remove and return the oldest item, waiting for one to arrive."""

    @abstractmethod
    def snapshot(self) -> BufferSnapshot:
        ...

    @abstractmethod
    def drain(self) -> List[T]:
        """Remove every item at once, oldest first."""

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return self.snapshot().size

    @property
    def is_empty(self) -> bool:
        return self.snapshot().is_empty

    @property
    def is_full(self) -> bool:
        return self.snapshot().is_full

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        snap = self.snapshot()
        return f"<{type(self).__name__} strategy={self.strategy} size={snap.size}/{snap.capacity}>"


class ConditionBuffer(BoundedBuffer[T]):
    """Buffer guarded by one lock and one condition variable.

    Producers and consumers wait on the same condition, so every state change
    is announced with ``notify_all()``. A plain ``notify()`` may wake a waiter
    of the wrong kind (a producer when only a consumer can make progress) and
    stall every thread. Each waiter re-checks its predicate after waking.
    """

    strategy = "condition"

    def __init__(self, capacity: int) -> None:
        super().__init__(capacity)
        self._items: Deque[T] = deque()
        self._cond = Condition()

    def _wake_all(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def _wait_until(
        self,
        predicate: Callable[[], bool],
        end_time: Optional[float],
        cancel: Optional[CancellationToken],
        what: str,
    ) -> None:
        # Caller holds self._cond.
        while not predicate():
            if cancel is not None and cancel.cancelled:
                raise Cancelled(f"{what} cancelled while waiting")
            remaining = _remaining(end_time)
            if remaining is not None and remaining <= 0:
                raise TimeoutError(f"{what} timed out")
            self._cond.wait(timeout=remaining)

    def put(
        self,
        item: T,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        end_time = _deadline(timeout)
        with self._cond:
            if cancel is not None:
                cancel.raise_if_cancelled()
            if len(self._items) >= self._capacity:
                logger.debug("buffer full (%d/%d), producer waiting", len(self._items), self._capacity)
                if cancel is None:
                    self._wait_until(self._has_space, end_time, None, "put")
                else:
                    with cancel.wake_on_cancel(self._wake_all):
                        self._wait_until(self._has_space, end_time, cancel, "put")

            self._items.append(item)
            logger.debug("item added, size %d/%d", len(self._items), self._capacity)
            self._cond.notify_all()

    def take(
        self,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> T:
        end_time = _deadline(timeout)
        with self._cond:
            if cancel is not None:
                cancel.raise_if_cancelled()
            if not self._items:
                logger.debug("buffer empty (0/%d), consumer waiting", self._capacity)
                if cancel is None:
                    self._wait_until(self._has_items, end_time, None, "take")
                else:
                    with cancel.wake_on_cancel(self._wake_all):
                        self._wait_until(self._has_items, end_time, cancel, "take")

            item = self._items.popleft()
            logger.debug("item removed, size %d/%d", len(self._items), self._capacity)
            self._cond.notify_all()
            return item

    def _has_space(self) -> bool:
        return len(self._items) < self._capacity

    def _has_items(self) -> bool:
        return bool(self._items)

    def snapshot(self) -> BufferSnapshot:
        with self._cond:
            return BufferSnapshot(size=len(self._items), capacity=self._capacity)

    def drain(self) -> List[T]:
        with self._cond:
            items = list(self._items)
            self._items.clear()
            self._cond.notify_all()
        return items


class QueueBuffer(BoundedBuffer[T]):
    """Buffer backed by ``queue.Queue(maxsize=capacity)``.

    The queue keeps separate not-full/not-empty conditions internally, so it
    never needs a broadcast. When a cancellation token is supplied the wait is
    split into ``poll_interval`` slices so cancellation is seen promptly.
    """

    strategy = "queue"

    def __init__(self, capacity: int, *, poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
        super().__init__(capacity)
        if poll_interval <= 0:
            raise InvalidConfiguration("poll_interval must be positive")
        self._queue: "queue.Queue[T]" = queue.Queue(maxsize=capacity)
        self._poll_interval = poll_interval

    def _slice(self, end_time: Optional[float], cancel: Optional[CancellationToken]) -> Optional[float]:
        if cancel is not None:
            cancel.raise_if_cancelled()
        remaining = _remaining(end_time)
        if remaining is not None:
            # An expired deadline still gets one non-blocking attempt.
            remaining = max(remaining, 0.0)
        if cancel is None:
            return remaining
        return self._poll_interval if remaining is None else min(remaining, self._poll_interval)

    @staticmethod
    def _check_deadline(end_time: Optional[float], what: str) -> None:
        if end_time is not None and time.monotonic() >= end_time:
            raise TimeoutError(f"{what} timed out")

    def put(
        self,
        item: T,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        end_time = _deadline(timeout)
        # Observational only: another thread may fill the slot before put() runs.
        logger.debug("attempting to add item, size %d/%d", self._queue.qsize(), self._capacity)
        while True:
            wait = self._slice(end_time, cancel)
            try:
                self._queue.put(item, timeout=wait)
            except queue.Full:
                self._check_deadline(end_time, "put")
                continue
            break
        logger.debug("item added, size %d/%d", self._queue.qsize(), self._capacity)

    def take(
        self,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> T:
        end_time = _deadline(timeout)
        logger.debug("attempting to take item, size %d/%d", self._queue.qsize(), self._capacity)
        while True:
            wait = self._slice(end_time, cancel)
            try:
                item = self._queue.get(timeout=wait)
            except queue.Empty:
                self._check_deadline(end_time, "take")
                continue
            break
        logger.debug("item removed, size %d/%d", self._queue.qsize(), self._capacity)
        return item

    def snapshot(self) -> BufferSnapshot:
        return BufferSnapshot(size=self._queue.qsize(), capacity=self._capacity)

    @property
    def is_empty(self) -> bool:
        return self._queue.empty()

    @property
    def is_full(self) -> bool:
        return self._queue.full()

    def drain(self) -> List[T]:
        items: List[T] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items


class BufferStrategy(str, Enum):
    CONDITION = "condition"
    QUEUE = "queue"


_STRATEGIES = {
    BufferStrategy.CONDITION: ConditionBuffer,
    BufferStrategy.QUEUE: QueueBuffer,
}


def parse_strategy(strategy: Union[str, BufferStrategy]) -> BufferStrategy:
    try:
        return BufferStrategy(strategy)
    except ValueError:
        choices = ", ".join(s.value for s in BufferStrategy)
        raise InvalidConfiguration(f"unknown strategy {strategy!r}, expected one of: {choices}") from None


def new_bounded_buffer(
    capacity: int, strategy: Union[str, BufferStrategy] = BufferStrategy.CONDITION
) -> BoundedBuffer:
    """Build a buffer of the requested strategy, validating the capacity first."""
    return _STRATEGIES[parse_strategy(strategy)](capacity)
