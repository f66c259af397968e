"""Exceptions raised by the RabbitMQ queue client."""


class QueueClientError(Exception):
    """Base class for queue client errors."""


class ConfigError(QueueClientError):
    """An operation was attempted before its prerequisites were set up."""


class BrokerConnectError(QueueClientError):
    """The broker connection could not be established."""
