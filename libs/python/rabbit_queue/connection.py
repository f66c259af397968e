"""
RabbitMQ connection management.

This module keeps one amqpstorm connection per profile key. Connections are
created lazily on first use and shared by every caller asking for the same key.
"""

import logging
from typing import Optional

import amqpstorm

from libs.python.rabbit_queue.cache import DeferredCache
from libs.python.rabbit_queue.config import (
    DEFAULT_PROFILE,
    BrokerConfig,
    get_ssl_options,
)
from libs.python.rabbit_queue.exceptions import BrokerConnectError

logger = logging.getLogger(__name__)


class ConnectionCache:
    """
    Lazily established connections, one per profile key.
    """

    def __init__(self) -> None:
        self._entries: DeferredCache[amqpstorm.Connection] = DeferredCache()

    def connect(
        self,
        config: BrokerConfig,
        key: str = DEFAULT_PROFILE,
    ) -> amqpstorm.Connection:
        """
        Get or create the connection for a profile.

        Args:
            config: Broker profiles
            key: Profile name

        Returns:
            Open amqpstorm connection

        Raises:
            ConfigError: If the profile does not exist
            BrokerConnectError: If the broker could not be reached. The failed
                entry is dropped so the next call connects again.

        A cached connection that is no longer open is dropped and replaced.
        """
        profile = config.get_profile(key)
        self.discard_closed(key)

        def _open() -> amqpstorm.Connection:
            logger.info("Connecting to RabbitMQ profile %s at %s", key, profile.hostname)
            try:
                connection = amqpstorm.UriConnection(
                    profile.url,
                    ssl_options=get_ssl_options(profile),
                )
            except Exception as e:
                logger.error("Failed to connect to RabbitMQ profile %s: %s", key, e)
                raise BrokerConnectError(
                    f"Failed to connect to RabbitMQ profile {key!r}: {e}"
                ) from e
            logger.info("RabbitMQ connection established for profile %s", key)
            return connection

        return self._entries.get_or_create(key, _open)

    def discard_closed(self, key: str = DEFAULT_PROFILE) -> Optional[amqpstorm.Connection]:
        """
        Forget the connection for key if it is resolved but no longer open.

        Returns:
            The dead connection that was dropped, or None
        """
        with self._entries.lock:
            future = self._entries.peek(key)
            if future is None or not future.done() or future.exception() is not None:
                return None
            connection = future.result()
            try:
                if connection.is_open:
                    return None
                logger.warning("RabbitMQ connection is closed, creating new one")
            except Exception as e:
                logger.warning("Error checking RabbitMQ connection status: %s", e)
            self._entries.pop(key)
        return connection

    def put(self, key: str, connection: amqpstorm.Connection) -> None:
        """Register an existing connection under key."""
        self._entries.put(key, connection)

    def get(self, key: str = DEFAULT_PROFILE) -> Optional[amqpstorm.Connection]:
        """Return the cached connection for key, waiting if it is still pending."""
        return self._entries.get(key)

    def close(self, key: str = DEFAULT_PROFILE) -> bool:
        """
        Close and forget the connection for key.

        Returns:
            False if no connection was cached, True otherwise

        Raises:
            Whatever the connection raised while closing. The entry is
            cleared either way.
        """
        future = self._entries.peek(key)
        if future is None:
            return False
        try:
            connection = future.result()
            connection.close()
            logger.info("RabbitMQ connection closed for profile %s", key)
        finally:
            with self._entries.lock:
                if self._entries.peek(key) is future:
                    self._entries.pop(key)
        return True

    def __contains__(self, key: object) -> bool:
        return key in self._entries
