"""Long-running producer/consumer session with live statistics.

Workers run until stopped. A capacity change never resizes a live buffer: the
session is stopped, the old buffer drained and a new one built.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Callable, List, Optional, Tuple

from bounded_buffer import BoundedBuffer, BufferStrategy, CancellationToken, InvalidConfiguration, new_bounded_buffer
from producer_consumer import Consumer, Producer, Worker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ControllerStats:
    produced: int
    consumed: int
    in_buffer: int
    capacity: int
    discarded: int


class SimulationController:
    def __init__(
        self,
        on_stats: Optional[Callable[[ControllerStats], None]] = None,
        on_event: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._on_stats = on_stats
        self._on_event = on_event
        self._lock = Lock()
        self._buffer: Optional[BoundedBuffer[int]] = None
        self._cancel: Optional[CancellationToken] = None
        self._workers: List[Worker[int]] = []
        self._produced = 0
        self._consumed = 0
        self._discarded = 0
        self._settings: Optional[Tuple[int, int, float]] = None

    @property
    def running(self) -> bool:
        return self._cancel is not None and not self._cancel.cancelled

    @property
    def buffer(self) -> Optional[BoundedBuffer[int]]:
        return self._buffer

    def _event(self, message: str, *args: object) -> None:
        logger.info(message, *args)
        if self._on_event:
            self._on_event(message % args)

    def start(
        self,
        producers: int,
        consumers: int,
        capacity: int,
        delay: float = 0.3,
        strategy: str = BufferStrategy.CONDITION.value,
    ) -> None:
        """Start unbounded workers; does nothing while a session is running."""
        if self.running:
            return
        if producers <= 0 or consumers <= 0:
            raise InvalidConfiguration("need at least one producer and one consumer")
        buffer = new_bounded_buffer(capacity, strategy)

        with self._lock:
            self._produced = 0
            self._consumed = 0
            self._discarded = 0
        self._launch(buffer, producers, consumers, delay)

    def _launch(self, buffer: BoundedBuffer[int], producers: int, consumers: int, delay: float) -> None:
        cancel = CancellationToken()
        workers: List[Worker[int]] = [
            Producer(
                buffer,
                f"Producer-{i}",
                None,
                delay=delay,
                cancel=cancel,
                on_item=self._produced_one,
                on_event=self._on_event,
            )
            for i in range(1, producers + 1)
        ]
        workers += [
            Consumer(
                buffer,
                f"Consumer-{i}",
                None,
                delay=delay,
                cancel=cancel,
                on_item=self._consumed_one,
                on_event=self._on_event,
            )
            for i in range(1, consumers + 1)
        ]
        self._buffer = buffer
        self._cancel = cancel
        self._workers = workers
        self._settings = (producers, consumers, delay)
        for worker in workers:
            worker.start()
        self._event(
            "session started: %d producers, %d consumers, capacity %d (%s)",
            producers,
            consumers,
            buffer.capacity,
            buffer.strategy,
        )

    def stop(self, timeout: Optional[float] = 2.0) -> None:
        if self._cancel is None or self._cancel.cancelled:
            return
        self._cancel.cancel()
        for worker in self._workers:
            worker.join(timeout=timeout)
        self._event("session stopped")
        self._publish()

    def change_capacity(self, capacity: int) -> List[int]:
        """Rebuild the buffer with a new capacity; returns the discarded items."""
        if self._buffer is None:
            raise InvalidConfiguration("no session to resize")
        new_buffer = new_bounded_buffer(capacity, self._buffer.strategy)
        was_running = self.running
        self.stop()
        leftovers = self._buffer.drain()
        with self._lock:
            self._discarded += len(leftovers)
        self._event("capacity %d -> %d, %d items discarded", self._buffer.capacity, capacity, len(leftovers))
        self._buffer = new_buffer
        if was_running and self._settings is not None:
            self._launch(new_buffer, *self._settings)
        self._publish()
        return leftovers

    def stats(self) -> ControllerStats:
        buffer = self._buffer
        snap = buffer.snapshot() if buffer is not None else None
        with self._lock:
            return ControllerStats(
                produced=self._produced,
                consumed=self._consumed,
                in_buffer=snap.size if snap else 0,
                capacity=snap.capacity if snap else 0,
                discarded=self._discarded,
            )

    def _produced_one(self, name: str, item: int) -> None:
        with self._lock:
            self._produced += 1
        logger.debug("%s produced %d", name, item)
        self._publish()

    def _consumed_one(self, name: str, item: int) -> None:
        with self._lock:
            self._consumed += 1
        logger.debug("%s consumed %d", name, item)
        self._publish()

    def _publish(self) -> None:
        if self._on_stats:
            self._on_stats(self.stats())
