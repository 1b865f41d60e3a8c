"""
Request/reply over plain publish and consume.

``RpcCoordinator.call`` publishes a request carrying a fresh correlation id and
blocks on a private reply queue until the matching response arrives or the
deadline passes. ``RpcServer`` is the worker side: a persistent consume loop
with bounded reconnect retries.

The requester and the replier must run in separate processes or threads; a
single thread cannot both block in ``call`` and serve the request.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from amqpstorm import AMQPError

from warren.config import AmqpProperties
from warren.exceptions import (
    ConnectionError,
    InvalidArgument,
    ResourceUnavailable,
    RetriesExhausted,
    StopConsuming,
)

from .base import ChannelProvider, ConsumeOutcome
from .message import Delivery, Message, MessageFactory, TRANSIENT
from .publisher import Publisher
from .subscriber import Consumer, Resolver
from .topology import TopologyDeclarer
from .util import new_correlation_id

logger = logging.getLogger(__name__)

REPLY_QUEUE_PREFIX = "rpc-reply"


@dataclass
class RpcCall:
    """State of one in-flight request."""

    correlation_id: str
    reply_queue: str
    deadline: float
    result: Optional[Message] = None


class RpcCoordinator:
    """Turns publish plus consume into a blocking call with a deadline."""

    def __init__(
        self,
        connection_manager: ChannelProvider,
        properties: Optional[AmqpProperties] = None,
        message_factory: Optional[MessageFactory] = None,
    ) -> None:
        self._connection_manager = connection_manager
        self._properties = properties or AmqpProperties()
        self._message_factory = message_factory or MessageFactory()
        self._publisher = Publisher(
            connection_manager, self._properties, self._message_factory
        )
        self._declarer = TopologyDeclarer(connection_manager, self._properties)

    @property
    def publisher(self) -> Publisher:
        return self._publisher

    def _reply_properties(self, reply_queue: str) -> AmqpProperties:
        return self._properties.merged(
            {
                "queue": reply_queue,
                "queue_passive": False,
                "queue_durable": False,
                # consumable from any connection, unlike an exclusive queue
                "queue_exclusive": False,
                "queue_auto_delete": True,
                "queue_properties": None,
                "consumer_tag": "",
                "consumer_no_ack": False,
                "consumer_exclusive": False,
                "qos": False,
                "message_limit": 0,
                "shutdown_signal": None,
                "poll_interval": self._properties.rpc_poll_interval,
            }
        )

    def call(
        self,
        routing_key: str,
        body: Any,
        timeout: float = 30,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Message]:
        """
        Publish a request and wait for its correlated reply.

        Replies carrying any other correlation id are rejected with requeue so
        another caller sharing the queue can still claim them.

        :param routing_key: routing key of the request
        :param body: request payload or ``Message``
        :param timeout: seconds to wait for the reply
        :param properties: extra request properties
        :return: the reply, or None if none arrived before the deadline
        :raises InvalidArgument: if ``timeout`` is not positive
        """
        if timeout is None or timeout <= 0:
            raise InvalidArgument(f"RPC timeout must be positive, got {timeout!r}")

        self._connection_manager.connect()

        correlation_id = new_correlation_id()
        reply_queue = f"{REPLY_QUEUE_PREFIX}-{correlation_id}"
        reply_props = self._reply_properties(reply_queue)
        self._declarer.declare_queue(reply_props)

        call = RpcCall(
            correlation_id=correlation_id,
            reply_queue=reply_queue,
            deadline=time.monotonic() + timeout,
        )

        request = self._message_factory.create(body)
        for key, value in (properties or {}).items():
            request.set(key, value)
        request.set_correlation_id(correlation_id).set_reply_to(reply_queue)

        def send_request(resolver: Resolver) -> None:
            if not self._publisher.publish(routing_key, request):
                logger.warning(
                    "RPC request %s was not accepted by the broker", correlation_id
                )
                resolver.stop_when_processed()

        def on_reply(delivery: Delivery, resolver: Resolver) -> None:
            if delivery.message.correlation_id != correlation_id:
                logger.debug(
                    "Requeueing reply for another call (correlation_id=%s)",
                    delivery.message.correlation_id,
                )
                resolver.reject(delivery, requeue=True)
                return
            resolver.acknowledge(delivery)
            call.result = delivery.message
            resolver.stop_when_processed()

        consumer = Consumer(self._connection_manager, reply_props)
        try:
            outcome = consumer.consume(
                reply_queue,
                on_reply,
                persistent=True,
                deadline=call.deadline,
                on_ready=send_request,
            )
        finally:
            self._delete_reply_queue(reply_queue)

        if call.result is None:
            logger.warning(
                "RPC call %s to %s ended without a reply (%s)",
                correlation_id,
                routing_key,
                outcome.value,
            )
        return call.result

    def _delete_reply_queue(self, reply_queue: str) -> None:
        try:
            if self._connection_manager.get_channel().is_open:
                self._declarer.queue_delete(reply_queue)
        except (AMQPError, ResourceUnavailable) as e:
            logger.warning("Error deleting reply queue %s: %s", reply_queue, e)

    def reply(
        self,
        request: Any,
        response_body: Any,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Send ``response_body`` to the request's reply_to queue.

        Does not acknowledge the request.

        :raises ReplyTargetMissing: if the request has no reply_to property
        """
        return self._publisher.reply(request, response_body, properties)


def error_document(error: Exception) -> str:
    return json.dumps({"result": None, "error": str(error)})


class RpcServer:
    """
    Serves RPC requests from one queue until stopped.

    Each attempt builds a fresh consumer from ``consumer_factory``, sets it up
    and consumes persistently. Connection and protocol failures are retried
    with capped exponential backoff.
    """

    def __init__(
        self,
        consumer_factory: Callable[[], Consumer],
        handler: Callable[[Delivery], Any],
        queue: Optional[str] = None,
        max_retries: int = 10,
        retry_delay: float = 5.0,
        max_retry_delay: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_retries < 1:
            raise InvalidArgument("max_retries must be at least 1")
        self._consumer_factory = consumer_factory
        self._handler = handler
        self._queue = queue
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._max_retry_delay = max_retry_delay
        self._sleep = sleep

    def _process(self, delivery: Delivery, resolver: Resolver) -> None:
        try:
            response = self._handler(delivery)
        except StopConsuming:
            raise
        except Exception as e:
            logger.exception("Error processing RPC request %s: %s", delivery.delivery_tag, e)
            response = Message(
                body=error_document(e),
                content_type="application/json",
                properties={"delivery_mode": TRANSIENT},
            )

        if delivery.message.reply_to:
            if not resolver.reply(delivery, response):
                logger.error("Failed to send reply for %s", delivery.delivery_tag)
        else:
            logger.warning(
                "RPC request %s has no reply_to, dropping response", delivery.delivery_tag
            )

        if delivery.resolution is None:
            resolver.acknowledge(delivery)

    def serve(self) -> ConsumeOutcome:
        """
        Run until the consume loop ends normally.

        :return: the outcome of the final consume loop
        :raises RetriesExhausted: after ``max_retries`` consecutive failures
        """
        attempt = 0
        delay = self._retry_delay
        while True:
            consumer = self._consumer_factory()
            try:
                consumer.setup()
                outcome = consumer.consume(self._queue, self._process, persistent=True)
                logger.info("RPC server stopped (%s)", outcome.value)
                return outcome
            except (ConnectionError, AMQPError) as e:
                attempt += 1
                logger.error("RPC server error: %s", e)
                if attempt >= self._max_retries:
                    logger.error("Max retries reached. Exiting.")
                    raise RetriesExhausted(attempt) from e
                logger.warning(
                    "Retrying in %s seconds... (Attempt %d/%d)",
                    delay,
                    attempt,
                    self._max_retries,
                )
                self._sleep(delay)
                delay = min(delay * 2, self._max_retry_delay)
            finally:
                consumer.disconnect()
