"""Unit tests for WorkQueue and RetryPolicy."""

import logging
import threading

from fakes import FakeClock, make_node

from node_dns.errors import (
    NoAddressAvailable,
    ProviderAuthError,
    ProviderRateLimited,
    ProviderUnavailable,
)
from node_dns.workqueue import RetryPolicy, WorkQueue


class TestWorkQueue:
    """Tests for deduplication and per-key serialization."""

    def test_burst_of_events_collapses_to_latest_snapshot(self) -> None:
        queue = WorkQueue(clock=FakeClock())
        queue.add("node1", make_node("node1", "192.0.2.1"))
        queue.add("node1", make_node("node1", "192.0.2.2"))
        queue.add("node1", make_node("node1", "192.0.2.3"))

        assert len(queue) == 1
        key, node = queue.get(timeout=0)
        assert key == "node1"
        assert node.addresses[1].address == "192.0.2.3"

    def test_key_is_not_handed_out_twice_while_processing(self) -> None:
        queue = WorkQueue(clock=FakeClock())
        queue.add("node1", make_node("node1"))
        queue.get(timeout=0)

        queue.add("node1", make_node("node1", "192.0.2.99"))

        assert queue.is_processing("node1")
        assert queue.get(timeout=0) is None

    def test_dirty_key_is_requeued_after_done(self) -> None:
        queue = WorkQueue(clock=FakeClock())
        queue.add("node1", make_node("node1"))
        queue.get(timeout=0)
        queue.add("node1", make_node("node1", "192.0.2.99"))

        queue.done("node1")

        key, node = queue.get(timeout=0)
        assert key == "node1"
        assert node.addresses[1].address == "192.0.2.99"

    def test_different_keys_are_independent(self) -> None:
        queue = WorkQueue(clock=FakeClock())
        queue.add("node1", make_node("node1"))
        queue.add("node2", make_node("node2"))

        first = queue.get(timeout=0)
        second = queue.get(timeout=0)

        assert {first[0], second[0]} == {"node1", "node2"}

    def test_add_after_waits_for_delay(self) -> None:
        clock = FakeClock()
        queue = WorkQueue(clock=clock)
        queue.add("node1", make_node("node1"))
        queue.get(timeout=0)
        queue.done("node1")

        queue.add_after("node1", 5)

        assert queue.get(timeout=0) is None
        clock.advance(5)
        key, node = queue.get(timeout=0)
        assert key == "node1"
        assert node is not None

    def test_add_after_zero_adds_immediately(self) -> None:
        queue = WorkQueue(clock=FakeClock())
        queue.add("node1", make_node("node1"))
        queue.get(timeout=0)
        queue.done("node1")

        queue.add_after("node1", 0)

        assert queue.get(timeout=0)[0] == "node1"

    def test_deleted_node_is_handed_out_as_none_then_forgotten(self) -> None:
        queue = WorkQueue(clock=FakeClock())
        queue.add("node1", make_node("node1"))
        queue.get(timeout=0)
        queue.done("node1")
        assert queue.known_keys() == {"node1"}

        queue.add("node1", None)
        key, node = queue.get(timeout=0)
        queue.done("node1")

        assert key == "node1"
        assert node is None
        assert queue.known_keys() == set()

    def test_shutdown_stops_handing_out_work(self) -> None:
        queue = WorkQueue(clock=FakeClock())
        queue.add("node1", make_node("node1"))

        queue.shut_down()
        queue.add("node2", make_node("node2"))

        assert queue.shutting_down
        assert queue.get(timeout=0) is None

    def test_shutdown_wakes_blocked_getter(self) -> None:
        queue = WorkQueue()
        results = []
        getter = threading.Thread(target=lambda: results.append(queue.get()))
        getter.start()

        queue.shut_down()
        getter.join(timeout=5)

        assert not getter.is_alive()
        assert results == [None]

    def test_blocked_getter_wakes_on_add(self) -> None:
        queue = WorkQueue()
        results = []
        getter = threading.Thread(target=lambda: results.append(queue.get(timeout=5)))
        getter.start()

        queue.add("node1", make_node("node1"))
        getter.join(timeout=5)

        assert results[0][0] == "node1"


class TestRetryPolicy:
    """Tests for backoff and error-class driven retry decisions."""

    def test_transient_backoff_is_exponential_and_capped(self) -> None:
        policy = RetryPolicy(base_seconds=1, max_seconds=10, jitter=False)
        error = ProviderUnavailable("503")

        delays = [policy.next_delay("node1", error) for _ in range(6)]

        assert delays == [1, 2, 4, 8, 10, 10]
        assert policy.failures("node1") == 6

    def test_transient_errors_never_give_up(self) -> None:
        policy = RetryPolicy(fatal_max_attempts=2, jitter=False)

        for _ in range(20):
            assert policy.next_delay("node1", ProviderUnavailable("down")) is not None

    def test_forget_resets_backoff(self) -> None:
        policy = RetryPolicy(base_seconds=1, jitter=False)
        policy.next_delay("node1", ProviderUnavailable("down"))
        policy.next_delay("node1", ProviderUnavailable("down"))

        policy.forget("node1")

        assert policy.next_delay("node1", ProviderUnavailable("down")) == 1

    def test_jitter_stays_within_bounds(self) -> None:
        low = RetryPolicy(base_seconds=4, jitter=True, rand=lambda: 0.0)
        high = RetryPolicy(base_seconds=4, jitter=True, rand=lambda: 0.999)

        assert low.backoff(1) == 2.0
        assert 5.9 < high.backoff(1) < 6.0

    def test_rate_limit_respects_retry_after(self) -> None:
        policy = RetryPolicy(base_seconds=1, jitter=False)

        delay = policy.next_delay("node1", ProviderRateLimited("slow down", retry_after=45))

        assert delay == 45

    def test_benign_is_not_retried(self) -> None:
        policy = RetryPolicy()

        assert policy.next_delay("node1", NoAddressAvailable("no address")) is None
        assert policy.failures("node1") == 0

    def test_fatal_escalates_then_gives_up(self, caplog) -> None:
        policy = RetryPolicy(base_seconds=1, fatal_max_attempts=3, jitter=False)
        error = ProviderAuthError("401 Invalid Token", 401)

        with caplog.at_level(logging.WARNING, logger="node_dns.workqueue"):
            delays = [policy.next_delay("node1", error) for _ in range(3)]

        assert delays == [1, 2, None]
        levels = [r.levelno for r in caplog.records]
        assert levels == [logging.WARNING, logging.ERROR, logging.CRITICAL]
        assert policy.failures("node1") == 0
