"""
Abstract base classes and common types for RabbitMQ messaging.

This module defines the interfaces shared by the publisher, consumer and RPC
components, along with common data structures used across the implementation.
"""

import abc
from enum import Enum
from typing import TYPE_CHECKING, Callable, NamedTuple

from amqpstorm import Channel, Connection

if TYPE_CHECKING:
    from warren.rabbitmq.message import Delivery
    from warren.rabbitmq.subscriber import Resolver


class QueueInfo(NamedTuple):
    """Result of a queue declaration."""

    name: str
    message_count: int
    consumer_count: int


class Prefetch(NamedTuple):
    """Last-applied QoS settings."""

    count: int
    size: int
    global_: bool


class ConsumerState(Enum):
    IDLE = "idle"
    CONSUMING = "consuming"
    STOPPED = "stopped"


class ConsumeOutcome(Enum):
    """How a consume loop ended; timeouts are outcomes, not errors."""

    STOPPED = "stopped"
    TIMED_OUT = "timed_out"
    EMPTY = "empty"
    CANCELLED = "cancelled"


# callback(delivery, resolver)
MessageCallback = Callable[["Delivery", "Resolver"], None]


class ChannelProvider(abc.ABC):
    """Anything that can hand out the live connection and channel."""

    @abc.abstractmethod
    def connect(self) -> Channel:
        """
        Establish the connection and channel if needed.

        Idempotent while connected.
        """
        pass

    @abc.abstractmethod
    def get_channel(self) -> Channel:
        pass

    @abc.abstractmethod
    def get_connection(self) -> Connection:
        pass

    @abc.abstractmethod
    def disconnect(self) -> None:
        """
        Close the channel and connection.

        Must tolerate partially-closed state and never raise.
        """
        pass


class MessagePublisherInterface(abc.ABC):
    @abc.abstractmethod
    def publish(self, routing_key: str, message, mandatory: bool = False) -> bool:
        pass


class MessageConsumerInterface(abc.ABC):
    @abc.abstractmethod
    def consume(self, queue: str, callback: MessageCallback, **kwargs) -> ConsumeOutcome:
        """
        Run the receive loop, handing each delivery to ``callback``.

        Blocking
        """
        pass
