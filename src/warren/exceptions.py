"""
Custom exceptions for the warren messaging library.

This module contains all custom exception classes used throughout the library.
Broker-reported protocol failures are not wrapped here; they propagate as the
``amqpstorm`` exceptions raised by the protocol layer.
"""

import builtins
from typing import Optional


class WarrenError(Exception):
    """Base class for every error raised by warren itself."""


class ConnectionError(WarrenError, builtins.ConnectionError):
    """Raised when the broker connection cannot be established (network or auth)."""

    def __init__(self, host: str, port: int, message: Optional[str] = None):
        self.host = host
        self.port = port
        if message is None:
            message = f"Unable to connect to broker at {host}:{port}"
        super().__init__(message)


class ConfigurationError(WarrenError):
    """Raised for invalid or contradictory topology and configuration values."""

    def __init__(
        self,
        message: str,
        exchange: Optional[str] = None,
        exchange_type: Optional[str] = None,
        queue: Optional[str] = None,
    ):
        self.exchange = exchange
        self.exchange_type = exchange_type
        self.queue = queue
        super().__init__(message)


class InvalidArgument(WarrenError, ValueError):
    """Raised synchronously, before any network call, for bad call arguments."""


class ResourceUnavailable(WarrenError, RuntimeError):
    """Raised when a connection or channel is requested before ``connect()``."""


class ConfirmsNotEnabled(WarrenError, RuntimeError):
    """Raised when waiting for publisher confirms that were never enabled."""

    def __init__(self, message: Optional[str] = None):
        if message is None:
            message = "Publisher confirms are not enabled on this channel"
        super().__init__(message)


class ReplyTargetMissing(WarrenError, RuntimeError):
    """Raised when replying to a message that carries no reply_to property."""

    def __init__(self, correlation_id: Optional[str] = None, message: Optional[str] = None):
        self.correlation_id = correlation_id
        if message is None:
            message = "Cannot reply: original message has no reply_to property"
        super().__init__(message)


class DeliveryAlreadyResolved(WarrenError, RuntimeError):
    """Raised when a second ack/reject is issued for the same delivery tag."""

    def __init__(self, delivery_tag: int, resolution: str, message: Optional[str] = None):
        self.delivery_tag = delivery_tag
        self.resolution = resolution
        if message is None:
            message = (
                f"Delivery {delivery_tag} was already resolved ({resolution})"
            )
        super().__init__(message)


class StopConsuming(WarrenError):
    """
    Cooperative stop signal for a consume loop.

    Raising this from a consumer callback ends the loop after the callback
    returns control; the loop reports it as a normal stop, not a failure.
    """


class RetriesExhausted(WarrenError):
    """Raised by the RPC server when every reconnect attempt has failed."""

    def __init__(self, attempts: int, message: Optional[str] = None):
        self.attempts = attempts
        if message is None:
            message = f"Giving up after {attempts} attempts"
        super().__init__(message)


class PublishFailed(WarrenError):
    """Raised when a batch flush leaves messages nacked or returned by the broker."""

    def __init__(self, published: int, failed: int, message: Optional[str] = None):
        self.published = published
        self.failed = failed
        if message is None:
            message = (
                f"{failed} of {published + failed} messages were nacked or "
                f"returned by the broker"
            )
        super().__init__(message)
