"""
Broker topology declaration.

``TopologyDeclarer`` declares exchanges, queues and bindings from an
``AmqpProperties`` snapshot, and exposes the AMQP-level management methods
(purge, delete, unbind, exchange-to-exchange bindings).
"""

import logging
from typing import Any, Iterable, Optional, Union

from amqpstorm import AMQPChannelError

from warren.config import AmqpProperties
from warren.exceptions import ConfigurationError, InvalidArgument

from .arguments import QUEUE_ARGUMENT_BLOCKLIST, ArgumentTable
from .base import ChannelProvider, QueueInfo
from .util import is_valid_exchange_type, normalize_routing_keys

logger = logging.getLogger(__name__)

NOT_FOUND = 404


def _is_not_found(error: AMQPChannelError) -> bool:
    return getattr(error, "error_code", None) == NOT_FOUND


class TopologyDeclarer:
    """Declares topology on the channel of a ``ChannelProvider``."""

    def __init__(
        self,
        connection_manager: ChannelProvider,
        properties: Optional[AmqpProperties] = None,
    ) -> None:
        self._connection_manager = connection_manager
        self._properties = properties or AmqpProperties()

    @property
    def _channel(self):
        return self._connection_manager.get_channel()

    def _props(self, properties: Optional[AmqpProperties]) -> AmqpProperties:
        return properties if properties is not None else self._properties

    def declare_exchange(self, properties: Optional[AmqpProperties] = None) -> str:
        """
        Declare (or passively check) the configured exchange.

        :param properties: properties to use instead of the declarer's own
        :return: the exchange name
        :raises ConfigurationError: for an empty name, an unknown type, or a
                                    passive check against a missing exchange
        """
        props = self._props(properties)
        exchange = props.exchange
        exchange_type = props.exchange_type

        if not exchange:
            raise ConfigurationError(
                "Please check your settings, exchange is not defined.",
                exchange=exchange,
                exchange_type=exchange_type,
            )
        if not is_valid_exchange_type(exchange_type):
            raise ConfigurationError(
                f"Invalid exchange type {exchange_type!r} for exchange {exchange!r}",
                exchange=exchange,
                exchange_type=exchange_type,
            )

        arguments = ArgumentTable.normalize(props.exchange_properties).to_wire()
        try:
            self._channel.exchange.declare(
                exchange=exchange,
                exchange_type=exchange_type,
                passive=props.exchange_passive,
                durable=props.exchange_durable,
                auto_delete=props.exchange_auto_delete,
                arguments=arguments,
            )
        except AMQPChannelError as e:
            if props.exchange_passive and _is_not_found(e):
                raise ConfigurationError(
                    f"Exchange {exchange!r} of type {exchange_type!r} does not exist",
                    exchange=exchange,
                    exchange_type=exchange_type,
                ) from e
            raise

        logger.info("Exchange declared: %s (%s)", exchange, exchange_type)
        return exchange

    def declare_queue(self, properties: Optional[AmqpProperties] = None) -> QueueInfo:
        """
        Declare (or passively check) the configured queue.

        An empty queue name asks the broker to generate one; the generated name
        is returned in the result.

        :param properties: properties to use instead of the declarer's own
        :raises ConfigurationError: on a passive check against a missing queue
        """
        props = self._props(properties)
        queue = props.queue or ""
        arguments = ArgumentTable.normalize(
            props.queue_properties, exclude=QUEUE_ARGUMENT_BLOCKLIST
        ).to_wire()

        try:
            result = self._channel.queue.declare(
                queue=queue,
                passive=props.queue_passive,
                durable=props.queue_durable,
                exclusive=props.queue_exclusive,
                auto_delete=props.queue_auto_delete,
                arguments=arguments,
            )
        except AMQPChannelError as e:
            if props.queue_passive and _is_not_found(e):
                raise ConfigurationError(
                    f"Queue {queue!r} does not exist", queue=queue
                ) from e
            raise

        info = QueueInfo(
            name=result.get("queue", queue) or queue,
            message_count=int(result.get("message_count", 0) or 0),
            consumer_count=int(result.get("consumer_count", 0) or 0),
        )
        logger.info(
            "Queue declared: %s (messages=%s consumers=%s)",
            info.name,
            info.message_count,
            info.consumer_count,
        )
        return info

    def bind(
        self,
        queue: str,
        exchange: str,
        routing_keys: Union[str, Iterable[str]],
        arguments: Any = None,
    ) -> list[str]:
        """
        Bind a queue to an exchange once per routing key.

        :param routing_keys: a key, a comma-separated string of keys, or a list
        :return: the normalized routing keys that were bound
        :raises InvalidArgument: if no usable routing key remains
        """
        keys = normalize_routing_keys(routing_keys)
        if not keys:
            raise InvalidArgument("Routing keys must be a non-empty string or list")

        arguments = ArgumentTable.normalize(arguments).to_wire()
        for routing_key in keys:
            self._channel.queue.bind(
                queue=queue,
                exchange=exchange,
                routing_key=routing_key,
                arguments=arguments,
            )
            logger.info(
                "Queue %s bound to exchange %s with routing key '%s'",
                queue,
                exchange,
                routing_key,
            )
        return keys

    def declare_and_bind(
        self, properties: Optional[AmqpProperties] = None
    ) -> Optional[QueueInfo]:
        """
        Declare the exchange, then the queue and its bindings.

        The queue is only declared when a name is configured or
        ``queue_force_declare`` is set; binding is skipped when no routing key
        is configured.

        :return: the queue info, or None when no queue was declared
        """
        props = self._props(properties)
        exchange = self.declare_exchange(props)

        if not props.queue and not props.queue_force_declare:
            return None

        info = self.declare_queue(props)
        if normalize_routing_keys(props.routing):
            self.bind(info.name, exchange, props.routing)
        else:
            logger.debug("No routing keys configured for queue %s, skipping bind", info.name)
        return info

    def queue_purge(self, queue: str) -> int:
        """
        :return: the number of messages purged
        """
        result = self._channel.queue.purge(queue=queue)
        purged = int((result or {}).get("message_count", 0) or 0)
        logger.info("Queue %s purged (%s messages)", queue, purged)
        return purged

    def queue_delete(self, queue: str, if_unused: bool = False, if_empty: bool = False) -> int:
        """
        :return: the number of messages deleted along with the queue
        """
        result = self._channel.queue.delete(
            queue=queue, if_unused=if_unused, if_empty=if_empty
        )
        deleted = int((result or {}).get("message_count", 0) or 0)
        logger.info("Queue deleted: %s", queue)
        return deleted

    def queue_unbind(
        self, queue: str, exchange: str, routing_key: str = "", arguments: Any = None
    ) -> None:
        self._channel.queue.unbind(
            queue=queue,
            exchange=exchange,
            routing_key=routing_key,
            arguments=ArgumentTable.normalize(arguments).to_wire(),
        )
        logger.info(
            "Queue %s unbound from exchange %s with routing key '%s'",
            queue,
            exchange,
            routing_key,
        )

    def exchange_delete(self, exchange: str, if_unused: bool = False) -> None:
        self._channel.exchange.delete(exchange=exchange, if_unused=if_unused)
        logger.info("Exchange deleted: %s", exchange)

    def exchange_bind(
        self, destination: str, source: str, routing_key: str = "", arguments: Any = None
    ) -> None:
        self._channel.exchange.bind(
            destination=destination,
            source=source,
            routing_key=routing_key,
            arguments=ArgumentTable.normalize(arguments).to_wire(),
        )
        logger.info(
            "Exchange %s bound to exchange %s with routing key '%s'",
            destination,
            source,
            routing_key,
        )

    def exchange_unbind(
        self, destination: str, source: str, routing_key: str = "", arguments: Any = None
    ) -> None:
        self._channel.exchange.unbind(
            destination=destination,
            source=source,
            routing_key=routing_key,
            arguments=ArgumentTable.normalize(arguments).to_wire(),
        )
        logger.info(
            "Exchange %s unbound from exchange %s with routing key '%s'",
            destination,
            source,
            routing_key,
        )
