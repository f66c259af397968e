"""Tests for ChannelCache and queue assertion."""

import threading
from unittest.mock import Mock

import pytest
from amqpstorm import AMQPChannelError

from libs.python.rabbit_queue.channel import QueueChannel
from libs.python.rabbit_queue.channel_cache import ChannelCache

QUEUE_NAME = "test-queue"


def make_connection():
    connection = Mock()
    connection.channel.side_effect = lambda: Mock(is_open=True)
    return connection


class TestChannelCache:
    """Test per-queue channel caching."""

    def test_get_or_create_opens_once(self):
        cache = ChannelCache()
        connection = make_connection()
        on_created = Mock()

        first = cache.get_or_create(QUEUE_NAME, connection, on_created)
        second = cache.get_or_create(QUEUE_NAME, connection, on_created)

        assert first is second
        assert first.connection is connection
        connection.channel.assert_called_once()
        on_created.assert_called_once_with(QUEUE_NAME, first)

    def test_channel_per_queue(self):
        cache = ChannelCache()
        connection = make_connection()

        jobs = cache.get_or_create("jobs", connection)
        reports = cache.get_or_create("reports", connection)

        assert jobs is not reports
        assert connection.channel.call_count == 2

    def test_concurrent_get_or_create(self):
        cache = ChannelCache()
        started = threading.Event()
        release = threading.Event()
        connection = Mock()

        def slow_channel():
            started.set()
            release.wait(timeout=5)
            return Mock(is_open=True)

        connection.channel.side_effect = slow_channel
        results = []

        def worker():
            results.append(cache.get_or_create(QUEUE_NAME, connection))

        threads = [threading.Thread(target=worker) for _ in range(6)]
        threads[0].start()
        assert started.wait(timeout=5)
        for thread in threads[1:]:
            thread.start()
        release.set()
        for thread in threads:
            thread.join(timeout=5)

        assert len(results) == 6
        assert all(result is results[0] for result in results)
        connection.channel.assert_called_once()

    def test_assert_queue_once(self):
        cache = ChannelCache()
        channel = cache.get_or_create(QUEUE_NAME, make_connection())
        channel.raw.queue.declare.return_value = {"testing": 123}

        first = cache.assert_queue(QUEUE_NAME, channel)
        second = cache.assert_queue(QUEUE_NAME, channel)

        assert first == {"testing": 123}
        assert second == first
        channel.raw.queue.declare.assert_called_once_with(queue=QUEUE_NAME, durable=False)
        assert cache.is_asserted(QUEUE_NAME)

    def test_assert_queue_memo_is_never_empty(self):
        cache = ChannelCache()
        channel = cache.get_or_create(QUEUE_NAME, make_connection())
        channel.raw.queue.declare.return_value = {}

        assert cache.assert_queue(QUEUE_NAME, channel)

    def test_assert_queue_skipped_when_memoized(self):
        cache = ChannelCache()
        channel = QueueChannel(Mock(is_open=True))
        cache.put(QUEUE_NAME, channel, asserted={"queue": QUEUE_NAME})

        cache.assert_queue(QUEUE_NAME, channel)

        channel.raw.queue.declare.assert_not_called()

    def test_assert_queue_on_evicted_channel_leaves_no_memo(self):
        cache = ChannelCache()
        connection = make_connection()
        old = cache.get_or_create(QUEUE_NAME, connection)
        cache.evict(QUEUE_NAME, old)

        cache.assert_queue(QUEUE_NAME, old)

        old.raw.queue.declare.assert_called_once_with(queue=QUEUE_NAME, durable=False)
        assert not cache.is_asserted(QUEUE_NAME)
        assert QUEUE_NAME not in cache

    def test_failed_declare_on_evicted_channel_does_not_affect_successor(self):
        cache = ChannelCache()
        connection = make_connection()
        old = cache.get_or_create(QUEUE_NAME, connection)
        cache.evict(QUEUE_NAME, old)
        old.raw.queue.declare.side_effect = AMQPChannelError("channel was closed")

        with pytest.raises(AMQPChannelError):
            cache.assert_queue(QUEUE_NAME, old)

        new = cache.get_or_create(QUEUE_NAME, connection)
        new.raw.queue.declare.return_value = {"queue": QUEUE_NAME}

        assert cache.assert_queue(QUEUE_NAME, new) == {"queue": QUEUE_NAME}
        new.raw.queue.declare.assert_called_once_with(queue=QUEUE_NAME, durable=False)
        assert cache.is_asserted(QUEUE_NAME)

    def test_pending_declare_on_evicted_channel_is_not_shared(self):
        cache = ChannelCache()
        connection = make_connection()
        old = cache.get_or_create(QUEUE_NAME, connection)
        started = threading.Event()
        release = threading.Event()

        def slow_declare(**kwargs):
            started.set()
            release.wait(timeout=5)
            raise AMQPChannelError("channel was closed")

        old.raw.queue.declare.side_effect = slow_declare
        errors = []

        def worker():
            try:
                cache.assert_queue(QUEUE_NAME, old)
            except AMQPChannelError as e:
                errors.append(e)

        thread = threading.Thread(target=worker)
        thread.start()
        assert started.wait(timeout=5)
        cache.evict(QUEUE_NAME, old)

        new = cache.get_or_create(QUEUE_NAME, connection)
        new.raw.queue.declare.return_value = {"queue": QUEUE_NAME}
        result = cache.assert_queue(QUEUE_NAME, new)
        release.set()
        thread.join(timeout=5)

        assert result == {"queue": QUEUE_NAME}
        assert len(errors) == 1
        new.raw.queue.declare.assert_called_once()
        assert cache.is_asserted(QUEUE_NAME)

    def test_forget_assertion_keeps_channel(self):
        cache = ChannelCache()
        channel = cache.get_or_create(QUEUE_NAME, make_connection())
        cache.assert_queue(QUEUE_NAME, channel)

        assert cache.forget_assertion(QUEUE_NAME)

        assert cache.get(QUEUE_NAME) is channel
        assert not cache.is_asserted(QUEUE_NAME)
        assert not cache.forget_assertion(QUEUE_NAME)

    def test_evict_removes_channel_and_memo(self):
        cache = ChannelCache()
        channel = cache.get_or_create(QUEUE_NAME, make_connection())
        cache.assert_queue(QUEUE_NAME, channel)

        assert cache.evict(QUEUE_NAME, channel)

        assert QUEUE_NAME not in cache
        assert not cache.is_asserted(QUEUE_NAME)
        assert cache.get(QUEUE_NAME) is None

    def test_evict_ignores_replaced_channel(self):
        cache = ChannelCache()
        connection = make_connection()
        old = cache.get_or_create(QUEUE_NAME, connection)
        cache.evict(QUEUE_NAME)
        new = cache.get_or_create(QUEUE_NAME, connection)
        cache.assert_queue(QUEUE_NAME, new)

        assert not cache.evict(QUEUE_NAME, old)

        assert cache.get(QUEUE_NAME) is new
        assert cache.is_asserted(QUEUE_NAME)

    def test_evict_missing(self):
        assert not ChannelCache().evict(QUEUE_NAME)

    def test_evict_connection(self):
        cache = ChannelCache()
        closing = make_connection()
        other = make_connection()
        cache.get_or_create("jobs", closing)
        cache.get_or_create("reports", closing)
        kept = cache.get_or_create("audit", other)

        evicted = cache.evict_connection(closing)

        assert sorted(evicted) == ["jobs", "reports"]
        assert cache.get("audit") is kept
