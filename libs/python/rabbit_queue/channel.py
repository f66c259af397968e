"""
Channel handle with an explicit termination signal.

amqpstorm channels do not notify anyone when the broker closes them, so
QueueChannel wraps a channel and lets owners subscribe to its termination.
The signal fires at most once, from whichever thread first notices the
channel is gone.
"""

import logging
import threading
from typing import Any, Callable, Optional

import amqpstorm
from amqpstorm import AMQPChannelError, AMQPConnectionError

logger = logging.getLogger(__name__)

TerminationCallback = Callable[[], None]

_FATAL_ERRORS = (AMQPChannelError, AMQPConnectionError)


class Subscription:
    """A cancellable registration for a channel's termination signal."""

    def __init__(self, channel: "QueueChannel", callback: TerminationCallback) -> None:
        self._channel = channel
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if self._active:
            self._active = False
            self._channel._remove_subscription(self)

    def _fire(self) -> None:
        if not self._active:
            return
        self._active = False
        try:
            self._callback()
        except Exception:
            logger.exception("Error in channel termination callback")


class QueueChannel:
    """
    Wrapper around an amqpstorm Channel exposing the queue operations the
    client needs.

    Any operation failing with a channel or connection error emits the
    termination signal before the error is re-raised.
    """

    def __init__(
        self,
        channel: amqpstorm.Channel,
        connection: Optional[amqpstorm.Connection] = None,
    ) -> None:
        self._channel = channel
        self.connection = connection
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._terminated = False

    @property
    def raw(self) -> amqpstorm.Channel:
        """The wrapped amqpstorm channel."""
        return self._channel

    @property
    def is_open(self) -> bool:
        if self._terminated:
            return False
        try:
            return bool(self._channel.is_open)
        except Exception as e:
            logger.warning("Error checking RabbitMQ channel status: %s", e)
            return False

    @property
    def terminated(self) -> bool:
        return self._terminated

    def on_termination(self, callback: TerminationCallback) -> Subscription:
        """
        Register callback to run once when the channel terminates.

        If the channel has already terminated the callback runs immediately.
        """
        subscription = Subscription(self, callback)
        with self._lock:
            if not self._terminated:
                self._subscriptions.append(subscription)
                return subscription
        subscription._fire()
        return subscription

    def terminate(self) -> None:
        """Emit the termination signal. Later calls do nothing."""
        with self._lock:
            if self._terminated:
                return
            self._terminated = True
            subscriptions, self._subscriptions = self._subscriptions, []
        logger.debug("RabbitMQ channel %s terminated", self._channel)
        for subscription in subscriptions:
            subscription._fire()

    def _remove_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _call(self, operation: Callable[[], Any]) -> Any:
        try:
            return operation()
        except _FATAL_ERRORS:
            self.terminate()
            raise

    def assert_queue(self, queue_name: str, durable: bool = False) -> dict:
        """Declare the queue, creating it if it does not exist."""
        return self._call(
            lambda: self._channel.queue.declare(queue=queue_name, durable=durable)
        )

    def send_to_queue(
        self,
        queue_name: str,
        body: bytes,
        headers: Optional[dict] = None,
    ) -> bool:
        """
        Publish body straight to a queue through the default exchange.

        Returns:
            True once amqpstorm has accepted the frame. With publisher
            confirms enabled on the channel, the broker's ack instead.
        """
        properties = {"headers": headers} if headers is not None else None
        result = self._call(
            lambda: self._channel.basic.publish(
                body=body,
                routing_key=queue_name,
                exchange="",
                properties=properties,
            )
        )
        if result is None:
            return True
        return bool(result)

    def purge_queue(self, queue_name: str) -> dict:
        return self._call(lambda: self._channel.queue.purge(queue_name))

    def delete_queue(self, queue_name: str) -> dict:
        return self._call(lambda: self._channel.queue.delete(queue_name))

    def close(self) -> None:
        """Close the underlying channel if it is still open."""
        try:
            if self._channel.is_open:
                self._channel.close()
                logger.info("Channel closed.")
        finally:
            self.terminate()
