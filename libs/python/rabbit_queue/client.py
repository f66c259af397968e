"""
RabbitMQ queue client.

QueueClient ties a broker profile to a single queue. It connects lazily,
keeps one channel for its queue, declares the queue once per channel and
publishes JSON-encoded messages to it.
"""

import json
import logging
import threading
from enum import StrEnum
from typing import Any, Mapping, Optional, Union

import amqpstorm

from libs.python.rabbit_queue.channel import QueueChannel
from libs.python.rabbit_queue.channel_cache import ChannelCache
from libs.python.rabbit_queue.config import DEFAULT_PROFILE, BrokerConfig
from libs.python.rabbit_queue.connection import ConnectionCache
from libs.python.rabbit_queue.exceptions import ConfigError
from libs.python.rabbit_queue.monitor import DEFAULT_POLL_INTERVAL, DeadChannelMonitor

logger = logging.getLogger(__name__)

GROUP_BY_HEADER = "groupBy"


class ClientState(StrEnum):
    """Lifecycle of a QueueClient."""
    UNCONNECTED = "unconnected"
    CONNECTION_PENDING = "connection_pending"
    CONNECTED = "connected"
    CHANNEL_PENDING = "channel_pending"
    CHANNEL_READY = "channel_ready"
    CONNECTION_CLOSED = "connection_closed"
    QUEUE_DESTROYED = "queue_destroyed"


def encode_message(data: Any) -> bytes:
    """Serialize data as compact JSON bytes."""
    return json.dumps(data, separators=(",", ":")).encode("utf-8")


class QueueClient:
    """
    Client for a single RabbitMQ queue.

    Usage:
        client = QueueClient({"default": {"url": "amqp://u:p@host:5672/vh"}}, "jobs")
        client.connect()
        client.create_channel()
        client.insert({"job": 1})

    Connection and channel caches belong to the client unless shared caches
    are passed in, in which case every client using them reuses the same
    connection per profile and the same channel per queue.
    """

    def __init__(
        self,
        config: Union[BrokerConfig, Mapping[str, Any]],
        queue_name: Optional[str] = None,
        connections: Optional[ConnectionCache] = None,
        channels: Optional[ChannelCache] = None,
        poll_interval: Optional[float] = DEFAULT_POLL_INTERVAL,
    ) -> None:
        """
        Args:
            config: BrokerConfig or a mapping of profile name -> {"url": ...}
            queue_name: Queue this client publishes to
            connections: Shared connection cache (default: a private one)
            channels: Shared channel cache (default: a private one)
            poll_interval: Seconds between dead channel checks, None to
                rely only on failed operations to detect dead channels
        """
        if not isinstance(config, BrokerConfig):
            config = BrokerConfig.from_mapping(config)
        self.config = config
        self.queue_name = queue_name
        self._poll_interval = poll_interval
        self._connections = connections if connections is not None else ConnectionCache()
        self._channels = channels if channels is not None else ChannelCache()
        self._monitor = DeadChannelMonitor(
            self._channels,
            on_dead=self._on_channel_dead,
            poll_interval=poll_interval,
        )
        self._config_key = DEFAULT_PROFILE
        self._state = ClientState.UNCONNECTED
        self._state_lock = threading.Lock()

    @property
    def state(self) -> ClientState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: ClientState, *from_states: ClientState) -> None:
        with self._state_lock:
            if from_states and self._state not in from_states:
                return
            if self._state != state:
                logger.debug("QueueClient %s: %s -> %s", self.queue_name, self._state, state)
                self._state = state

    def _on_channel_dead(self, queue_name: str) -> None:
        if queue_name != self.queue_name:
            return
        self._set_state(ClientState.CHANNEL_PENDING, ClientState.CHANNEL_READY)

    def connect(
        self,
        connections: Optional[ConnectionCache] = None,
        config_key: str = DEFAULT_PROFILE,
    ) -> amqpstorm.Connection:
        """
        Connect to the broker profile config_key, reusing a cached connection.

        Args:
            connections: Connection cache to use from now on
            config_key: Profile name in the config

        Raises:
            ConfigError: If the profile does not exist
            BrokerConnectError: If the connection attempt failed
        """
        if connections is not None:
            self._connections = connections
        self._config_key = config_key
        self._set_state(
            ClientState.CONNECTION_PENDING,
            ClientState.UNCONNECTED,
            ClientState.CONNECTION_CLOSED,
        )
        dead = self._connections.discard_closed(config_key)
        if dead is not None:
            self._drop_channels(dead)
        try:
            connection = self._connections.connect(self.config, config_key)
        except Exception:
            self._set_state(ClientState.UNCONNECTED, ClientState.CONNECTION_PENDING)
            raise
        self._set_state(ClientState.CONNECTED, ClientState.CONNECTION_PENDING)
        return connection

    def create_channel(self, channels: Optional[ChannelCache] = None) -> QueueChannel:
        """
        Open (or reuse) the channel for this client's queue and declare the
        queue on it once.

        Args:
            channels: Channel cache to use from now on

        Raises:
            ConfigError: If there is no connection or no queue name
        """
        if channels is not None and channels is not self._channels:
            self._monitor.stop()
            self._channels = channels
            self._monitor = DeadChannelMonitor(
                channels,
                on_dead=self._on_channel_dead,
                poll_interval=self._poll_interval,
            )

        connection = self._connections.get(self._config_key)
        if connection is None:
            raise ConfigError("No RabbitMQ connection")
        if not self.queue_name:
            raise ConfigError("No RabbitMQ queue")
        if not connection.is_open:
            logger.warning(
                "RabbitMQ connection for profile %s is closed, reconnecting",
                self._config_key,
            )
            connection = self.connect(config_key=self._config_key)

        self._set_state(ClientState.CHANNEL_PENDING)
        try:
            channel = self._channels.get_or_create(
                self.queue_name, connection, on_created=self._monitor.watch
            )
            self._channels.assert_queue(self.queue_name, channel)
        except Exception:
            self._set_state(ClientState.CONNECTED)
            raise
        self._set_state(ClientState.CHANNEL_READY)
        return channel

    def get_channel(self) -> Optional[QueueChannel]:
        """Return the cached channel for this client's queue, if any."""
        if not self.queue_name:
            return None
        return self._channels.get(self.queue_name)

    def _require_channel(self) -> QueueChannel:
        channel = self.get_channel()
        if channel is None:
            raise ConfigError("No RabbitMQ channel")
        return channel

    def insert(self, data: Any) -> bool:
        """
        Publish data to the queue as JSON.

        Returns:
            True once the message was handed to the client library for
            sending. This is not a broker delivery guarantee.
        """
        channel = self._require_channel()
        logger.debug("Publishing message to queue %s", self.queue_name)
        return channel.send_to_queue(self.queue_name, encode_message(data))

    def insert_with_group_by(self, key: Any, data: Any) -> bool:
        """Publish data with a groupBy header consumers can partition on."""
        channel = self._require_channel()
        logger.debug("Publishing message to queue %s grouped by %s", self.queue_name, key)
        return channel.send_to_queue(
            self.queue_name,
            encode_message(data),
            headers={GROUP_BY_HEADER: key},
        )

    def purge(self) -> dict:
        """Remove all messages from the queue, keeping the queue."""
        channel = self._require_channel()
        result = channel.purge_queue(self.queue_name)
        logger.info("Queue %s purged", self.queue_name)
        return result

    def destroy(self) -> dict:
        """
        Delete the queue from the broker.

        Only the assertion memo is dropped, so a later create_channel declares
        the queue again. The channel and the connection stay cached.
        """
        channel = self._require_channel()
        result = channel.delete_queue(self.queue_name)
        logger.info("Queue %s deleted", self.queue_name)
        self._channels.forget_assertion(self.queue_name)
        self._set_state(ClientState.QUEUE_DESTROYED)
        return result

    def close_connection(self) -> None:
        """
        Close the cached connection, if there is one.

        Channels derived from it are dropped from the channel cache once the
        connection is closed, including any opened while it was closing.
        """
        self._monitor.stop()
        if self._config_key not in self._connections:
            return
        connection = None
        try:
            connection = self._connections.get(self._config_key)
            self._connections.close(self._config_key)
        finally:
            if connection is not None:
                self._drop_channels(connection)
            self._set_state(ClientState.CONNECTION_CLOSED)

    def _drop_channels(self, connection: amqpstorm.Connection) -> None:
        for queue_name in self._channels.evict_connection(connection):
            self._monitor.unwatch(queue_name)

    def __enter__(self) -> "QueueClient":
        self.connect()
        self.create_channel()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
        return False
