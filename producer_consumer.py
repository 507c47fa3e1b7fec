"""Producer and consumer threads sharing a bounded buffer, plus a small harness."""
from __future__ import annotations

import argparse
import logging
import sys
import time
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock, Thread
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

from bounded_buffer import (
    BoundedBuffer,
    BufferStrategy,
    CancellationToken,
    Cancelled,
    InvalidConfiguration,
    new_bounded_buffer,
    parse_strategy,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    PRODUCING = "producing"
    CONSUMING = "consuming"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class WorkerReport:
    name: str
    role: str
    state: WorkerState
    completed: int
    requested: Optional[int]


def generate_item(name: str, sequence: int) -> int:
    """Deterministic item for ``name``'s ``sequence``-th production."""
    return zlib.crc32(name.encode("utf-8")) % 100 * 1000 + sequence


def square(item: int) -> int:
    return item * item


class DestinationContainer(Generic[T]):
    """Collects items in the order consumers received them."""

    def __init__(self) -> None:
        self._items: List[T] = []
        self._lock = Lock()

    def add(self, item: T) -> None:
        with self._lock:
            self._items.append(item)

    def snapshot(self) -> List[T]:
        """Return a copy of the stored items."""
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def _check_count(count: Optional[int], what: str) -> Optional[int]:
    if count is not None and count < 0:
        raise InvalidConfiguration(f"{what} must be non-negative, got {count}")
    return count


class Worker(Thread, ABC, Generic[T]):
    """Thread that repeats one buffer operation ``count`` times or until cancelled.

    ``on_event`` receives the same lifecycle lines that go to the module
    logger (started, waiting, each item, stopped/finished), already formatted.
    """

    role = "worker"
    active_state = WorkerState.IDLE

    def __init__(
        self,
        buffer: BoundedBuffer[T],
        name: str,
        count: Optional[int],
        *,
        delay: float = 0.0,
        cancel: Optional[CancellationToken] = None,
        on_item: Optional[Callable[[str, T], None]] = None,
        on_event: Optional[Callable[[str], None]] = None,
    ) -> None:
        super().__init__(name=name, daemon=True)
        if delay < 0:
            raise InvalidConfiguration("delay must be non-negative")
        self._buffer = buffer
        self._count = _check_count(count, "count")
        self._delay = delay
        self._cancel = cancel if cancel is not None else CancellationToken()
        self._on_item = on_item
        self._on_event = on_event
        self._state = WorkerState.IDLE
        self._completed = 0
        self._blocked = False

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def completed(self) -> int:
        return self._completed

    @property
    def blocked(self) -> bool:
        return self._blocked

    def stop(self) -> None:
        self._cancel.cancel()

    def report(self) -> WorkerReport:
        return WorkerReport(self.name, self.role, self._state, self._completed, self._count)

    def _pending(self) -> bool:
        return self._count is None or self._completed < self._count

    def _emit(self, level: int, message: str, *args: object) -> None:
        logger.log(level, message, *args)
        if self._on_event:
            self._on_event(message % args)

    @abstractmethod
    def _step(self, sequence: int) -> None:
        """Perform the ``sequence``-th buffer operation."""

    def run(self) -> None:
        self._state = self.active_state
        self._emit(
            logging.INFO, "%s started (%s items)", self.name, "unbounded" if self._count is None else self._count
        )
        try:
            while self._pending():
                self._cancel.raise_if_cancelled()
                self._step(self._completed + 1)
                self._completed += 1
                if self._delay and self._pending() and self._cancel.wait(self._delay):
                    raise Cancelled("cancelled between items")
        except Cancelled:
            self._blocked = False
            self._state = WorkerState.CANCELLED
            self._emit(logging.INFO, "%s stopped after %d items (cancelled)", self.name, self._completed)
            return
        self._state = WorkerState.DONE
        self._emit(logging.INFO, "%s finished, %d items", self.name, self._completed)


class Producer(Worker[T]):
    """Producer thread that generates ``count`` items and pushes them into the buffer."""

    role = "producer"
    active_state = WorkerState.PRODUCING

    def __init__(
        self,
        buffer: BoundedBuffer[T],
        name: str,
        count: Optional[int],
        *,
        delay: float = 0.0,
        cancel: Optional[CancellationToken] = None,
        generate_fn: Callable[[str, int], T] = generate_item,
        on_item: Optional[Callable[[str, T], None]] = None,
        on_event: Optional[Callable[[str], None]] = None,
    ) -> None:
        super().__init__(buffer, name, count, delay=delay, cancel=cancel, on_item=on_item, on_event=on_event)
        self._generate_fn = generate_fn

    def _step(self, sequence: int) -> None:
        item = self._generate_fn(self.name, sequence)
        self._blocked = self._buffer.is_full
        if self._blocked:
            self._emit(logging.DEBUG, "%s waiting (buffer full)", self.name)
        self._buffer.put(item, cancel=self._cancel)
        self._blocked = False
        self._emit(logging.DEBUG, "%s produced item #%d: %r", self.name, sequence, item)
        if self._on_item:
            self._on_item(self.name, item)


class Consumer(Worker[T]):
    """Consumer thread that takes ``count`` items out of the buffer and processes them.

    ``destination`` receives the raw taken item, not the ``process_fn``
    result, so it can be compared against what the producers put in.
    """

    role = "consumer"
    active_state = WorkerState.CONSUMING

    def __init__(
        self,
        buffer: BoundedBuffer[T],
        name: str,
        count: Optional[int],
        *,
        delay: float = 0.0,
        cancel: Optional[CancellationToken] = None,
        process_fn: Optional[Callable[[T], object]] = square,
        destination: Optional[DestinationContainer[T]] = None,
        on_item: Optional[Callable[[str, T], None]] = None,
        on_event: Optional[Callable[[str], None]] = None,
    ) -> None:
        super().__init__(buffer, name, count, delay=delay, cancel=cancel, on_item=on_item, on_event=on_event)
        self._process_fn = process_fn
        self._destination = destination

    def _step(self, sequence: int) -> None:
        self._blocked = self._buffer.is_empty
        if self._blocked:
            self._emit(logging.DEBUG, "%s waiting (buffer empty)", self.name)
        item = self._buffer.take(cancel=self._cancel)
        self._blocked = False
        self._emit(logging.DEBUG, "%s consumed item #%d: %r", self.name, sequence, item)
        if self._process_fn:
            result = self._process_fn(item)
            logger.debug("%s processed item #%d: %r -> %r", self.name, sequence, item, result)
        if self._destination is not None:
            self._destination.add(item)
        if self._on_item:
            self._on_item(self.name, item)


@dataclass(frozen=True)
class SimulationConfig:
    capacity: int = 5
    producers: int = 2
    consumers: int = 2
    items_per_producer: int = 5
    strategy: str = BufferStrategy.CONDITION.value
    producer_delay: float = 0.0
    consumer_delay: float = 0.0
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise InvalidConfiguration(f"capacity must be positive, got {self.capacity}")
        if self.producers <= 0 or self.consumers <= 0:
            raise InvalidConfiguration("need at least one producer and one consumer")
        if self.items_per_producer < 0:
            raise InvalidConfiguration("items_per_producer must be non-negative")
        if self.producer_delay < 0 or self.consumer_delay < 0:
            raise InvalidConfiguration("delays must be non-negative")
        if self.timeout is not None and self.timeout <= 0:
            raise InvalidConfiguration("timeout must be positive")
        parse_strategy(self.strategy)

    @property
    def total_items(self) -> int:
        return self.producers * self.items_per_producer

    def consumer_quotas(self) -> List[int]:
        """Split the total evenly; the first consumers absorb the remainder."""
        base, extra = divmod(self.total_items, self.consumers)
        return [base + (1 if i < extra else 0) for i in range(self.consumers)]


@dataclass
class SimulationReport:
    strategy: str
    capacity: int
    workers: List[WorkerReport] = field(default_factory=list)
    final_size: int = 0
    elapsed: float = 0.0

    def _total(self, role: str) -> int:
        return sum(w.completed for w in self.workers if w.role == role)

    @property
    def produced(self) -> int:
        return self._total("producer")

    @property
    def consumed(self) -> int:
        return self._total("consumer")

    @property
    def completed(self) -> bool:
        return all(w.state is WorkerState.DONE for w in self.workers)


def run_simulation(
    config: SimulationConfig,
    *,
    buffer: Optional[BoundedBuffer[int]] = None,
    cancel: Optional[CancellationToken] = None,
    destination: Optional[DestinationContainer[int]] = None,
) -> SimulationReport:
    """Run one producer/consumer session to completion, timeout or cancellation."""
    if buffer is None:
        buffer = new_bounded_buffer(config.capacity, config.strategy)
    cancel = cancel if cancel is not None else CancellationToken()

    consumers = [
        Consumer(
            buffer,
            f"Consumer-{i}",
            quota,
            delay=config.consumer_delay,
            cancel=cancel,
            destination=destination,
        )
        for i, quota in enumerate(config.consumer_quotas(), start=1)
    ]
    producers = [
        Producer(buffer, f"Producer-{i}", config.items_per_producer, delay=config.producer_delay, cancel=cancel)
        for i in range(1, config.producers + 1)
    ]
    workers: List[Worker[int]] = [*producers, *consumers]

    logger.info(
        "starting %s simulation: capacity=%d producers=%d consumers=%d items=%d",
        buffer.strategy,
        buffer.capacity,
        len(producers),
        len(consumers),
        config.total_items,
    )
    start = time.monotonic()
    for t in consumers + producers:
        t.start()

    end_time = start + config.timeout if config.timeout is not None else None
    for t in workers:
        t.join(timeout=None if end_time is None else max(end_time - time.monotonic(), 0))

    if any(t.is_alive() for t in workers):
        logger.warning("simulation timed out, cancelling remaining workers")
        cancel.cancel()
        for t in workers:
            t.join()

    report = SimulationReport(
        strategy=buffer.strategy,
        capacity=buffer.capacity,
        workers=[t.report() for t in workers],
        final_size=buffer.size,
        elapsed=time.monotonic() - start,
    )
    logger.info(
        "simulation finished in %.3fs: produced=%d consumed=%d remaining=%d",
        report.elapsed,
        report.produced,
        report.consumed,
        report.final_size,
    )
    return report


def format_report(report: SimulationReport) -> str:
    lines = [f"[{report.strategy}] capacity={report.capacity} elapsed={report.elapsed:.3f}s"]
    for w in report.workers:
        quota = "-" if w.requested is None else w.requested
        lines.append(f"  {w.name:<12} {w.state.value:<10} {w.completed}/{quota}")
    lines.append(f"  produced={report.produced} consumed={report.consumed} remaining={report.final_size}")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run producers and consumers over a bounded buffer.")
    parser.add_argument("--capacity", type=int, default=5)
    parser.add_argument("--producers", type=int, default=2)
    parser.add_argument("--consumers", type=int, default=2)
    parser.add_argument("--items", type=int, default=5, help="items per producer")
    parser.add_argument(
        "--strategy",
        choices=[s.value for s in BufferStrategy] + ["both"],
        default="both",
    )
    parser.add_argument("--producer-delay", type=float, default=0.05)
    parser.add_argument("--consumer-delay", type=float, default=0.075)
    parser.add_argument("--timeout", type=float, default=None, help="cancel workers after this many seconds")
    parser.add_argument("--log-level", default="WARNING")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Command line entry point:
        python producer_consumer.py --strategy both --capacity 5
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(threadName)s %(name)s %(levelname)s %(message)s",
    )
    strategies = [s.value for s in BufferStrategy] if args.strategy == "both" else [args.strategy]

    exit_code = 0
    for strategy in strategies:
        try:
            config = SimulationConfig(
                capacity=args.capacity,
                producers=args.producers,
                consumers=args.consumers,
                items_per_producer=args.items,
                strategy=strategy,
                producer_delay=args.producer_delay,
                consumer_delay=args.consumer_delay,
                timeout=args.timeout,
            )
        except InvalidConfiguration as exc:
            print(f"invalid configuration: {exc}", file=sys.stderr)
            return 2
        report = run_simulation(config)
        print(format_report(report))
        if not report.completed:
            exit_code = 1
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
