"""
RabbitMQ queue client.

This package provides a client bound to a single RabbitMQ queue:
- Lazily created connections, one per broker profile
- One channel per queue, with the queue declared once per channel
- Eviction of channels the broker has closed
- JSON publishing with optional groupBy headers
"""

from libs.python.rabbit_queue.cache import DeferredCache
from libs.python.rabbit_queue.channel import QueueChannel, Subscription
from libs.python.rabbit_queue.channel_cache import ChannelCache
from libs.python.rabbit_queue.client import ClientState, QueueClient, encode_message
from libs.python.rabbit_queue.config import (
    BrokerConfig,
    BrokerProfile,
    get_ssl_options,
)
from libs.python.rabbit_queue.connection import ConnectionCache
from libs.python.rabbit_queue.exceptions import (
    BrokerConnectError,
    ConfigError,
    QueueClientError,
)
from libs.python.rabbit_queue.monitor import DeadChannelMonitor

__all__ = [
    # Config
    "BrokerConfig",
    "BrokerProfile",
    "get_ssl_options",
    # Caches
    "DeferredCache",
    "ConnectionCache",
    "ChannelCache",
    # Channels
    "QueueChannel",
    "Subscription",
    "DeadChannelMonitor",
    # Client
    "ClientState",
    "QueueClient",
    "encode_message",
    # Errors
    "QueueClientError",
    "ConfigError",
    "BrokerConnectError",
]
