"""
Per-queue channel cache and queue assertion memo.

Both stores share one lock so a channel and its assertion memo are always
evicted together.
"""

import logging
import threading
from typing import Callable, Optional

import amqpstorm

from libs.python.rabbit_queue.cache import DeferredCache
from libs.python.rabbit_queue.channel import QueueChannel

logger = logging.getLogger(__name__)


class ChannelCache:
    """
    One channel per queue name, plus a marker recording that the queue has
    been declared on that channel.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._channels: DeferredCache[QueueChannel] = DeferredCache(self._lock)
        self._asserted: DeferredCache[dict] = DeferredCache(self._lock)

    def get_or_create(
        self,
        queue_name: str,
        connection: amqpstorm.Connection,
        on_created: Optional[Callable[[str, QueueChannel], None]] = None,
    ) -> QueueChannel:
        """
        Return the channel for queue_name, opening one on connection if absent.

        Args:
            queue_name: Queue the channel serves
            connection: Connection to derive a new channel from
            on_created: Called with (queue_name, channel) by the caller that
                opened a new channel, after the cache entry is resolved
        """
        opened = []

        def _open() -> QueueChannel:
            channel = QueueChannel(connection.channel(), connection=connection)
            opened.append(channel)
            logger.info("RabbitMQ channel opened for queue %s", queue_name)
            return channel

        channel = self._channels.get_or_create(queue_name, _open)
        if opened and on_created is not None:
            on_created(queue_name, channel)
        return channel

    def assert_queue(self, queue_name: str, channel: QueueChannel) -> dict:
        """
        Declare queue_name on channel unless it was already declared there.

        The memo is only recorded while channel is the one cached for
        queue_name. A channel that has already been evicted still gets the
        queue declared, but leaves no memo behind for its successor.

        Returns:
            The declare result memoized for this channel's lifetime
        """

        def _declare() -> dict:
            logger.info("Declaring queue %s", queue_name)
            return channel.assert_queue(queue_name, durable=False) or {"queue": queue_name}

        return self._asserted.get_or_create(
            queue_name,
            _declare,
            condition=lambda: self._is_cached(queue_name, channel),
        )

    def _is_cached(self, queue_name: str, channel: QueueChannel) -> bool:
        future = self._channels.peek(queue_name)
        if future is None or not future.done() or future.exception() is not None:
            return False
        return future.result() is channel

    def forget_assertion(self, queue_name: str) -> bool:
        """Drop the assertion memo for queue_name, keeping its channel."""
        return self._asserted.pop(queue_name) is not None

    def put(self, queue_name: str, channel: QueueChannel, asserted: Optional[dict] = None) -> None:
        """Register an existing channel, optionally already asserted."""
        with self._lock:
            self._channels.put(queue_name, channel)
            if asserted is not None:
                self._asserted.put(queue_name, asserted)

    def get(self, queue_name: str) -> Optional[QueueChannel]:
        return self._channels.get(queue_name)

    def is_asserted(self, queue_name: str) -> bool:
        return queue_name in self._asserted

    def evict(self, queue_name: str, channel: Optional[QueueChannel] = None) -> bool:
        """
        Remove the channel and assertion memo for queue_name in one step.

        If channel is given, nothing is removed unless it is the channel
        currently cached for queue_name.

        Returns:
            True if anything was evicted
        """
        with self._lock:
            future = self._channels.peek(queue_name)
            if future is None:
                return False
            if channel is not None:
                if not future.done() or future.exception() is not None:
                    return False
                if future.result() is not channel:
                    return False
            self._channels.pop(queue_name)
            self._asserted.pop(queue_name)
        logger.info("Evicted RabbitMQ channel for queue %s", queue_name)
        return True

    def evict_connection(self, connection: amqpstorm.Connection) -> list[str]:
        """
        Evict every resolved channel derived from connection.

        Returns:
            Queue names whose channels were evicted
        """
        evicted = []
        with self._lock:
            for queue_name in self._channels.keys():
                future = self._channels.peek(queue_name)
                if not future.done() or future.exception() is not None:
                    continue
                channel = future.result()
                if channel.connection is connection and self.evict(queue_name, channel):
                    evicted.append(queue_name)
        return evicted

    def __contains__(self, queue_name: object) -> bool:
        return queue_name in self._channels
