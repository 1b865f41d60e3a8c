"""
Per-call messaging facade.

``AmqpClient`` builds short-lived components from a configuration profile for
every call, merging the call's property overrides over the profile, and always
disconnects them afterwards.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Union

from warren.config import AmqpProperties, Profiles
from warren.exceptions import InvalidArgument, PublishFailed
from warren.rabbitmq.base import ChannelProvider, ConsumeOutcome, MessageCallback
from warren.rabbitmq.connection import ConnectionManager
from warren.rabbitmq.message import Message, MessageFactory
from warren.rabbitmq.publisher import Publisher
from warren.rabbitmq.rpc import RpcCoordinator
from warren.rabbitmq.subscriber import Consumer
from warren.rabbitmq.util import generate_name, normalize_routing_keys

logger = logging.getLogger(__name__)

LISTENER_PREFIX = "listener"


class AmqpClient:
    def __init__(
        self,
        profiles: Optional[Profiles] = None,
        profile: Optional[str] = None,
        message_factory: Optional[MessageFactory] = None,
        connection_manager_factory: Callable[[AmqpProperties], ChannelProvider] = ConnectionManager,
    ) -> None:
        """
        :param profiles: configuration profiles; a default profile when omitted
        :param profile: profile to use instead of ``profiles.use``
        :param message_factory: factory turning payloads into messages
        :param connection_manager_factory: builds a connection manager from properties
        :raises ConfigurationError: if the profile does not exist
        """
        self._profiles = profiles or Profiles()
        self._properties = self._profiles.get(profile)
        self._message_factory = message_factory or MessageFactory()
        self._connection_manager_factory = connection_manager_factory
        self._batch: list[tuple[str, Any]] = []

    def properties(self, overrides: Optional[dict[str, Any]] = None) -> AmqpProperties:
        """The profile properties with ``overrides`` applied."""
        return self._properties.merged(overrides)

    @contextmanager
    def _session(self, properties: AmqpProperties) -> Iterator[ChannelProvider]:
        connection_manager = self._connection_manager_factory(properties)
        try:
            yield connection_manager
        finally:
            connection_manager.disconnect()

    def publish(self, routing_key: str, message: Any, **properties: Any) -> bool:
        """
        Publish one message, declaring the configured topology first.

        :return: whether the publish succeeded (see ``Publisher.publish``)
        """
        properties["routing"] = routing_key
        props = self.properties(properties)
        with self._session(props) as connection_manager:
            publisher = Publisher(connection_manager, props, self._message_factory)
            publisher.setup()
            return publisher.publish(routing_key, message, mandatory=props.mandatory)

    def batch_basic_publish(self, routing_key: str, message: Any) -> None:
        """Queue a message for the next ``batch_publish()``."""
        self._batch.append((routing_key, message))

    def batch_publish(self, **properties: Any) -> int:
        """
        Publish every queued message over one connection.

        Messages the broker nacked or returned stay queued for the next call.

        :return: the number of messages published; 0, without connecting, when
                 nothing is queued
        :raises PublishFailed: if any message was nacked or returned
        """
        if not self._batch:
            return 0

        props = self.properties(properties)
        with self._session(props) as connection_manager:
            publisher = Publisher(connection_manager, props, self._message_factory)
            publisher.setup()
            for routing_key, message in self._batch:
                publisher.batch_publish(routing_key, message)
            published = publisher.flush_batch()
            remaining = [(routing_key, message) for routing_key, message, _ in publisher.batch]

        self._batch = remaining
        if remaining:
            raise PublishFailed(published, len(remaining))
        return published

    def consume(self, queue: str, callback: MessageCallback, **properties: Any) -> ConsumeOutcome:
        properties["queue"] = queue
        props = self.properties(properties)
        with self._session(props) as connection_manager:
            consumer = Consumer(connection_manager, props)
            consumer.setup()
            return consumer.consume(queue, callback)

    def listen(
        self,
        routing_keys: Union[str, list[str]],
        callback: MessageCallback,
        **properties: Any,
    ) -> ConsumeOutcome:
        """
        Consume everything routed with ``routing_keys``.

        A queue named ``listener-<uuid>`` is declared unless ``queue`` is given,
        and bound once per routing key. A generated queue is auto-deleted once
        the listener stops, and the loop keeps waiting until it is stopped or
        cancelled (for instance by the shutdown signal), unless the caller
        overrides ``queue_auto_delete`` or ``persistent``.

        :raises InvalidArgument: if no routing key is given
        """
        keys = normalize_routing_keys(routing_keys)
        if not keys:
            raise InvalidArgument("Routing keys must be a non-empty string or list")

        properties.setdefault("exchange_type", "topic")
        if not properties.get("queue"):
            properties["queue"] = generate_name(LISTENER_PREFIX)
            properties.setdefault("queue_auto_delete", True)
            properties.setdefault("persistent", True)
        properties["queue_force_declare"] = True
        properties["routing"] = keys

        logger.info("Listening on %s for %s", properties["queue"], ", ".join(keys))
        return self.consume(properties.pop("queue"), callback, **properties)

    def rpc(
        self,
        routing_key: str,
        request: Any,
        timeout: float = 30,
        **properties: Any,
    ) -> Optional[Message]:
        """
        Make a blocking RPC call.

        :return: the reply, or None on timeout
        """
        props = self.properties(properties)
        with self._session(props) as connection_manager:
            coordinator = RpcCoordinator(connection_manager, props, self._message_factory)
            return coordinator.call(routing_key, request, timeout=timeout)

    def message(self, body: Union[str, bytes], **properties: Any) -> Message:
        return self._message_factory.create_with_properties(body, properties)
