import io
import time
import unittest
from contextlib import redirect_stderr, redirect_stdout

from bounded_buffer import BufferStrategy, CancellationToken, InvalidConfiguration, new_bounded_buffer
from producer_consumer import (
    Consumer,
    DestinationContainer,
    Producer,
    SimulationConfig,
    Worker,
    WorkerState,
    format_report,
    generate_item,
    main,
    run_simulation,
    square,
)

STRATEGIES = [s.value for s in BufferStrategy]


class ItemTests(unittest.TestCase):
    def test_generate_item_is_deterministic(self) -> None:
        self.assertEqual(generate_item("Producer-1", 3), generate_item("Producer-1", 3))
        self.assertEqual(generate_item("Producer-1", 4) - generate_item("Producer-1", 3), 1)
        self.assertEqual(generate_item("Producer-1", 7) % 1000, 7)

    def test_square(self) -> None:
        self.assertEqual(square(12), 144)


class WorkerTests(unittest.TestCase):
    def test_moves_all_items(self) -> None:
        for strategy in STRATEGIES:
            with self.subTest(strategy=strategy):
                buffer = new_bounded_buffer(2, strategy)
                destination: DestinationContainer[int] = DestinationContainer()

                producer = Producer(buffer, "producer-test", 5, generate_fn=lambda name, seq: seq)
                consumer = Consumer(buffer, "consumer-test", 5, destination=destination)

                producer.start()
                consumer.start()

                producer.join(timeout=1)
                consumer.join(timeout=1)

                self.assertFalse(producer.is_alive(), "producer should finish")
                self.assertFalse(consumer.is_alive(), "consumer should finish")
                self.assertEqual(destination.snapshot(), [1, 2, 3, 4, 5])
                self.assertEqual(producer.state, WorkerState.DONE)
                self.assertEqual(consumer.state, WorkerState.DONE)
                self.assertEqual(consumer.completed, 5)
                self.assertTrue(buffer.is_empty)

    def test_process_fn_applies_to_each_item(self) -> None:
        buffer = new_bounded_buffer(2)
        processed = []

        consumer = Consumer(buffer, "consumer-transform", 3, process_fn=lambda x: processed.append(x * 2))
        producer = Producer(buffer, "producer-transform", 3, generate_fn=lambda name, seq: seq)

        consumer.start()
        producer.start()

        producer.join(timeout=1)
        consumer.join(timeout=1)

        self.assertEqual(processed, [2, 4, 6])

    def test_destination_keeps_raw_items(self) -> None:
        buffer = new_bounded_buffer(2)
        destination: DestinationContainer[int] = DestinationContainer()

        consumer = Consumer(buffer, "consumer-raw", 3, destination=destination)
        producer = Producer(buffer, "producer-raw", 3, generate_fn=lambda name, seq: seq + 1)

        consumer.start()
        producer.start()
        producer.join(timeout=1)
        consumer.join(timeout=1)

        self.assertEqual(destination.snapshot(), [2, 3, 4])

    def test_worker_base_is_abstract(self) -> None:
        with self.assertRaises(TypeError):
            Worker(new_bounded_buffer(1), "plain", 1)

    def test_events_follow_worker_lifecycle(self) -> None:
        buffer = new_bounded_buffer(1)
        events = []
        producer = Producer(buffer, "P", 2, generate_fn=lambda name, seq: seq, on_event=events.append)

        producer.start()
        time.sleep(0.05)
        self.assertTrue(producer.blocked)
        self.assertEqual(buffer.take(), 1)
        producer.join(timeout=0.5)

        self.assertEqual(
            events,
            [
                "P started (2 items)",
                "P produced item #1: 1",
                "P waiting (buffer full)",
                "P produced item #2: 2",
                "P finished, 2 items",
            ],
        )

    def test_consumer_events_on_cancel(self) -> None:
        buffer = new_bounded_buffer(1)
        events = []
        consumer = Consumer(buffer, "C", 2, on_event=events.append)

        consumer.start()
        time.sleep(0.05)
        consumer.stop()
        consumer.join(timeout=0.5)

        self.assertEqual(
            events,
            ["C started (2 items)", "C waiting (buffer empty)", "C stopped after 0 items (cancelled)"],
        )

    def test_initial_state_is_idle(self) -> None:
        producer = Producer(new_bounded_buffer(1), "idle", 1)
        self.assertEqual(producer.state, WorkerState.IDLE)
        self.assertEqual(producer.report().completed, 0)
        self.assertEqual(producer.report().requested, 1)

    def test_negative_count_rejected(self) -> None:
        with self.assertRaises(InvalidConfiguration):
            Producer(new_bounded_buffer(1), "bad", -1)

    def test_negative_delay_rejected(self) -> None:
        with self.assertRaises(InvalidConfiguration):
            Consumer(new_bounded_buffer(1), "bad", 1, delay=-0.1)

    def test_consumer_stop_exits_even_when_waiting(self) -> None:
        for strategy in STRATEGIES:
            with self.subTest(strategy=strategy):
                buffer = new_bounded_buffer(1, strategy)
                destination: DestinationContainer[int] = DestinationContainer()
                consumer = Consumer(buffer, "consumer-stop", 3, destination=destination)

                consumer.start()
                time.sleep(0.05)
                self.assertTrue(consumer.blocked)
                consumer.stop()
                consumer.join(timeout=0.5)

                self.assertFalse(consumer.is_alive())
                self.assertEqual(consumer.state, WorkerState.CANCELLED)
                self.assertEqual(destination.snapshot(), [])

    def test_producer_stop_reports_partial_progress(self) -> None:
        for strategy in STRATEGIES:
            with self.subTest(strategy=strategy):
                buffer = new_bounded_buffer(2, strategy)
                producer = Producer(buffer, "producer-stop", 5)

                producer.start()
                time.sleep(0.05)
                producer.stop()
                producer.join(timeout=0.5)

                self.assertFalse(producer.is_alive())
                report = producer.report()
                self.assertEqual(report.state, WorkerState.CANCELLED)
                self.assertEqual(report.completed, 2)
                self.assertEqual(buffer.size, 2)

    def test_stop_interrupts_delay(self) -> None:
        buffer = new_bounded_buffer(10)
        producer = Producer(buffer, "slow", 3, delay=5.0)
        producer.start()
        time.sleep(0.05)
        producer.stop()
        producer.join(timeout=0.5)

        self.assertFalse(producer.is_alive())
        self.assertEqual(producer.completed, 1)
        self.assertEqual(producer.state, WorkerState.CANCELLED)

    def test_on_item_callback(self) -> None:
        buffer = new_bounded_buffer(4)
        seen = []
        producer = Producer(buffer, "cb", 3, on_item=lambda name, item: seen.append((name, item)))
        producer.start()
        producer.join(timeout=1)

        self.assertEqual([name for name, _ in seen], ["cb"] * 3)
        self.assertEqual(buffer.drain(), [item for _, item in seen])


class SimulationConfigTests(unittest.TestCase):
    def test_consumer_quotas_cover_all_items(self) -> None:
        config = SimulationConfig(producers=3, consumers=2, items_per_producer=5)
        self.assertEqual(config.consumer_quotas(), [8, 7])
        self.assertEqual(sum(config.consumer_quotas()), config.total_items)

    def test_invalid_values(self) -> None:
        bad = [
            dict(capacity=0),
            dict(producers=0),
            dict(consumers=0),
            dict(items_per_producer=-1),
            dict(producer_delay=-1.0),
            dict(timeout=0),
            dict(strategy="ring"),
        ]
        for kwargs in bad:
            with self.subTest(**kwargs):
                with self.assertRaises(InvalidConfiguration):
                    SimulationConfig(**kwargs)


class RunSimulationTests(unittest.TestCase):
    def test_two_by_two_moves_ten_items(self) -> None:
        for strategy in STRATEGIES:
            with self.subTest(strategy=strategy):
                config = SimulationConfig(capacity=5, producers=2, consumers=2, items_per_producer=5, strategy=strategy)
                destination: DestinationContainer[int] = DestinationContainer()
                report = run_simulation(config, destination=destination)

                self.assertTrue(report.completed)
                self.assertEqual(report.produced, 10)
                self.assertEqual(report.consumed, 10)
                self.assertEqual(report.final_size, 0)
                self.assertEqual(len(destination), 10)
                self.assertEqual(report.strategy, strategy)

    def test_many_workers_with_uneven_split(self) -> None:
        config = SimulationConfig(capacity=3, producers=10, consumers=3, items_per_producer=20)
        destination: DestinationContainer[int] = DestinationContainer()
        report = run_simulation(config, destination=destination)

        self.assertTrue(report.completed)
        self.assertEqual(report.consumed, 200)
        expected = sorted(generate_item(f"Producer-{p}", i) for p in range(1, 11) for i in range(1, 21))
        self.assertEqual(sorted(destination.snapshot()), expected)

    def test_timeout_cancels_and_reports_partial_counts(self) -> None:
        for strategy in STRATEGIES:
            with self.subTest(strategy=strategy):
                buffer = new_bounded_buffer(2, strategy)
                config = SimulationConfig(
                    capacity=2,
                    producers=1,
                    consumers=1,
                    items_per_producer=50,
                    consumer_delay=0.02,
                    strategy=strategy,
                    timeout=0.1,
                )
                report = run_simulation(config, buffer=buffer)

                self.assertFalse(report.completed)
                self.assertTrue(any(w.state is WorkerState.CANCELLED for w in report.workers))
                self.assertLessEqual(report.consumed, report.produced)
                self.assertEqual(report.produced - report.consumed, report.final_size)
                self.assertEqual(report.final_size, buffer.size)

    def test_external_cancel_before_start(self) -> None:
        token = CancellationToken()
        token.cancel()
        report = run_simulation(SimulationConfig(), cancel=token)

        self.assertEqual(report.produced, 0)
        self.assertEqual(report.consumed, 0)
        self.assertTrue(all(w.state is WorkerState.CANCELLED for w in report.workers))

    def test_format_report(self) -> None:
        report = run_simulation(SimulationConfig(capacity=2, producers=1, consumers=1, items_per_producer=2))
        text = format_report(report)
        self.assertIn("[condition] capacity=2", text)
        self.assertIn("Producer-1", text)
        self.assertIn("produced=2 consumed=2 remaining=0", text)


class CliTests(unittest.TestCase):
    def test_main_runs_both_strategies(self) -> None:
        out = io.StringIO()
        with redirect_stdout(out):
            code = main(["--items", "3", "--producer-delay", "0", "--consumer-delay", "0"])
        self.assertEqual(code, 0)
        self.assertIn("[condition]", out.getvalue())
        self.assertIn("[queue]", out.getvalue())

    def test_main_exits_one_when_workers_cancelled(self) -> None:
        out = io.StringIO()
        with redirect_stdout(out):
            code = main(
                [
                    "--strategy", "condition",
                    "--items", "50",
                    "--producer-delay", "0",
                    "--consumer-delay", "0.02",
                    "--timeout", "0.1",
                ]
            )
        self.assertEqual(code, 1)
        self.assertIn("[condition]", out.getvalue())
        self.assertIn("cancelled", out.getvalue())

    def test_main_rejects_zero_capacity(self) -> None:
        err = io.StringIO()
        with redirect_stderr(err):
            code = main(["--capacity", "0"])
        self.assertEqual(code, 2)
        self.assertIn("capacity must be positive", err.getvalue())


if __name__ == "__main__":
    unittest.main()
