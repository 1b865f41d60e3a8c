"""
RabbitMQ consumer implementation.

``Consumer`` runs a blocking, iteration-bounded receive loop and hands every
delivery to a user callback together with a ``Resolver``, the only sanctioned
way to acknowledge, reject or stop.
"""

import logging
import time
from typing import Any, Callable, Mapping, Optional

from amqpstorm import AMQPError

from warren.config import AmqpProperties
from warren.exceptions import (
    DeliveryAlreadyResolved,
    InvalidArgument,
    ResourceUnavailable,
    StopConsuming,
)

from .base import (
    ChannelProvider,
    ConsumeOutcome,
    ConsumerState,
    MessageCallback,
    MessageConsumerInterface,
    Prefetch,
    QueueInfo,
)
from .message import Delivery, Resolution
from .publisher import Publisher
from .topology import TopologyDeclarer

logger = logging.getLogger(__name__)

# returned by the receive wait when the broker (or we) cancelled the consumer
_CANCELLED = object()


class Resolver:
    """
    Per-loop handle passed to consumer callbacks.

    Holds only the narrow operations it needs (ack, reject, stop, cancel,
    reply) rather than the consumer itself.
    """

    def __init__(
        self,
        ack: Callable[[int], None],
        reject: Callable[[int, bool], None],
        stop: Callable[[], None],
        cancel: Optional[Callable[[], None]] = None,
        count_down: Optional[Callable[[], int]] = None,
        reply: Optional[Callable[[Delivery, Any, Optional[Mapping[str, Any]]], bool]] = None,
        shutdown_signal: Optional[str] = None,
    ) -> None:
        self._ack = ack
        self._reject = reject
        self._stop = stop
        self._cancel = cancel
        self._count_down = count_down
        self._reply = reply
        self._shutdown_signal = (
            shutdown_signal.encode("utf-8") if shutdown_signal else None
        )

    @staticmethod
    def _ensure_unresolved(delivery: Delivery) -> None:
        if delivery.resolution is not None:
            raise DeliveryAlreadyResolved(
                delivery.delivery_tag, delivery.resolution.value
            )

    def acknowledge(self, delivery: Delivery) -> None:
        """
        Positively acknowledge the delivery.

        Acknowledging the configured shutdown signal body also cancels the
        consumer, ending the loop once the callback returns.
        """
        self._ensure_unresolved(delivery)
        self._ack(delivery.delivery_tag)
        delivery.resolution = Resolution.ACKED
        logger.debug("Message acknowledged: %s", delivery.delivery_tag)

        if self._shutdown_signal is not None and delivery.body == self._shutdown_signal:
            logger.info("Shutdown signal received, cancelling consumer")
            if self._cancel:
                self._cancel()

    def reject(self, delivery: Delivery, requeue: bool = False) -> None:
        """
        Reject the delivery, discarding (or dead-lettering) it unless ``requeue``.
        """
        self._ensure_unresolved(delivery)
        self._reject(delivery.delivery_tag, requeue)
        delivery.resolution = Resolution.REQUEUED if requeue else Resolution.REJECTED
        logger.debug(
            "Message rejected: %s (requeue=%s)", delivery.delivery_tag, requeue
        )

    def stop_when_processed(self) -> None:
        """Stop the loop after the current callback returns."""
        self._stop()

    def stop_when_drained(self) -> None:
        """
        Stop once as many messages as the queue held when consuming started
        have been processed.
        """
        if self._count_down is None:
            self._stop()
            return
        if self._count_down() <= 0:
            self._stop()

    def reply(
        self,
        delivery: Delivery,
        response: Any,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Publish an RPC response for ``delivery``; does not acknowledge it."""
        if self._reply is None:
            raise ResourceUnavailable("Replies are not available for this consumer")
        return self._reply(delivery, response, properties)


class Consumer(MessageConsumerInterface):
    """
    Consumes one queue at a time.

    States: ``IDLE`` after construction or ``setup()``, ``CONSUMING`` inside
    ``consume()``, ``STOPPED`` once the loop has exited for any reason.
    """

    def __init__(
        self,
        connection_manager: ChannelProvider,
        properties: Optional[AmqpProperties] = None,
    ) -> None:
        self._connection_manager = connection_manager
        self._properties = properties or AmqpProperties()
        self._declarer = TopologyDeclarer(connection_manager, self._properties)

        self._state = ConsumerState.IDLE
        self._prefetch: Optional[Prefetch] = None
        self._queue_info: Optional[QueueInfo] = None
        self._consumer_tag: Optional[str] = None
        self._stop_requested = False
        self._cancel_requested = False
        self._remaining = 0
        self._reply_publisher: Optional[Publisher] = None

    @property
    def connection_manager(self) -> ChannelProvider:
        return self._connection_manager

    @property
    def properties(self) -> AmqpProperties:
        return self._properties

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def consumer_tag(self) -> Optional[str]:
        return self._consumer_tag

    @property
    def queue_info(self) -> Optional[QueueInfo]:
        return self._queue_info

    def setup(self) -> Optional[QueueInfo]:
        """Connect, then declare the exchange, the queue and its bindings."""
        self._connection_manager.connect()
        self._queue_info = self._declarer.declare_and_bind()
        self._state = ConsumerState.IDLE
        return self._queue_info

    def set_prefetch(self, count: int, size: int = 0, global_: bool = False) -> None:
        """
        Limit unacknowledged deliveries.

        Applied immediately when connected, otherwise remembered for the next
        ``consume()``.

        :raises InvalidArgument: for a negative count or size, before any broker call
        """
        if count < 0:
            raise InvalidArgument(f"Prefetch count must not be negative, got {count}")
        if size < 0:
            raise InvalidArgument(f"Prefetch size must not be negative, got {size}")

        self._prefetch = Prefetch(count=count, size=size, global_=global_)
        try:
            channel = self._connection_manager.get_channel()
        except ResourceUnavailable:
            logger.debug("Not connected, prefetch %s will be applied on consume", count)
            return
        self._apply_prefetch(channel)

    def get_prefetch(self) -> Prefetch:
        if self._prefetch is not None:
            return self._prefetch
        return Prefetch(
            count=self._properties.qos_prefetch_count,
            size=self._properties.qos_prefetch_size,
            global_=self._properties.qos_a_global,
        )

    def _apply_prefetch(self, channel) -> None:
        prefetch = self.get_prefetch()
        channel.basic.qos(
            prefetch_count=prefetch.count,
            prefetch_size=prefetch.size,
            global_=prefetch.global_,
        )
        logger.info(
            "QoS applied: prefetch_count=%s prefetch_size=%s global=%s",
            prefetch.count,
            prefetch.size,
            prefetch.global_,
        )

    def get_queue_message_count(self, queue: Optional[str] = None) -> int:
        """
        Passively declare the queue and return its ready-message count.

        The count is a point-in-time estimate.
        """
        queue = queue or self._properties.queue
        if not queue:
            raise InvalidArgument("A queue name is required")
        props = self._properties.merged({"queue": queue, "queue_passive": True})
        return self._declarer.declare_queue(props).message_count

    def consume(
        self,
        queue: Optional[str],
        callback: MessageCallback,
        timeout: Optional[float] = None,
        persistent: Optional[bool] = None,
        deadline: Optional[float] = None,
        on_ready: Optional[Callable[[Resolver], None]] = None,
    ) -> ConsumeOutcome:
        """
        Run the receive loop until it stops.

        :param queue: queue to consume; defaults to the configured queue
        :param callback: called as ``callback(delivery, resolver)``
        :param timeout: seconds to wait for each delivery (0 waits forever);
                        defaults to the ``timeout`` property
        :param persistent: keep waiting after a timeout; defaults to the
                           ``persistent`` property
        :param deadline: absolute ``time.monotonic()`` value after which the
                         loop ends with TIMED_OUT, even when persistent
        :param on_ready: called with the resolver once the broker has
                         registered the consumer, before the first wait
        :return: how the loop ended
        :raises StopConsuming: never; a stop is reported as ``STOPPED``
        """
        props = self._properties
        queue = queue or props.queue
        if not queue:
            raise InvalidArgument("A queue name is required to consume")
        timeout = props.timeout if timeout is None else timeout
        persistent = props.persistent if persistent is None else persistent
        if timeout < 0:
            raise InvalidArgument(f"Timeout must not be negative, got {timeout}")

        channel = self._connection_manager.get_channel()
        self._stop_requested = False
        self._cancel_requested = False

        if deadline is None:
            self._remaining = self.get_queue_message_count(queue)
            if not persistent and self._remaining == 0:
                logger.info("Queue %s is empty, nothing to consume", queue)
                self._state = ConsumerState.STOPPED
                return ConsumeOutcome.EMPTY

        if props.qos or self._prefetch is not None:
            self._apply_prefetch(channel)

        self._consumer_tag = channel.basic.consume(
            queue=queue,
            consumer_tag=props.consumer_tag,
            exclusive=props.consumer_exclusive,
            no_ack=props.consumer_no_ack,
            no_local=props.consumer_no_local,
            arguments=props.consumer_properties or None,
        )
        self._state = ConsumerState.CONSUMING
        logger.info("Consuming from %s with consumer tag %s", queue, self._consumer_tag)

        resolver = self._build_resolver(channel)
        outcome = ConsumeOutcome.STOPPED
        handled = 0
        try:
            if on_ready is not None:
                on_ready(resolver)
            while not self._stop_requested:
                raw = self._next_message(
                    channel, None if persistent else timeout, deadline
                )
                if raw is _CANCELLED:
                    outcome = ConsumeOutcome.CANCELLED
                    break
                if raw is None:
                    outcome = ConsumeOutcome.TIMED_OUT
                    break

                delivery = Delivery.from_amqpstorm(
                    raw, channel, no_ack=props.consumer_no_ack
                )
                logger.debug(
                    "Message received: %s (routing_key=%s redelivered=%s)",
                    delivery.delivery_tag,
                    delivery.routing_key,
                    delivery.redelivered,
                )
                try:
                    callback(delivery, resolver)
                except StopConsuming:
                    self._stop_requested = True
                handled += 1

                if self._stop_requested:
                    outcome = ConsumeOutcome.STOPPED
                    break
                if self._cancel_requested:
                    outcome = ConsumeOutcome.CANCELLED
                    break
                if props.message_limit and handled >= props.message_limit:
                    logger.info("Message limit %s reached", props.message_limit)
                    outcome = ConsumeOutcome.STOPPED
                    break
        finally:
            self._state = ConsumerState.STOPPED
            self._release(channel)

        logger.info(
            "Stopped consuming from %s after %s messages (%s)",
            queue,
            handled,
            outcome.value,
        )
        return outcome

    def _next_message(self, channel, timeout: Optional[float], deadline: Optional[float]):
        """
        Wait for the next inbound message.

        :return: the raw message, ``_CANCELLED`` if the consumer is gone, or
                 None when ``timeout`` or ``deadline`` expired
        """
        started = time.monotonic()
        while True:
            for raw in channel.build_inbound_messages(break_on_empty=True, auto_decode=False):
                return raw

            if self._consumer_tag not in channel.consumer_tags:
                logger.warning("Consumer %s was cancelled", self._consumer_tag)
                return _CANCELLED

            now = time.monotonic()
            if deadline is not None and now >= deadline:
                return None
            if timeout and now - started >= timeout:
                return None
            time.sleep(self._properties.poll_interval)

    def _build_resolver(self, channel) -> Resolver:
        def ack(delivery_tag: int) -> None:
            channel.basic.ack(delivery_tag=delivery_tag)

        def reject(delivery_tag: int, requeue: bool) -> None:
            channel.basic.reject(delivery_tag=delivery_tag, requeue=requeue)

        def stop() -> None:
            self._stop_requested = True

        def cancel() -> None:
            self._cancel_requested = True
            self._cancel_consumer(channel)

        def count_down() -> int:
            self._remaining -= 1
            return self._remaining

        return Resolver(
            ack=ack,
            reject=reject,
            stop=stop,
            cancel=cancel,
            count_down=count_down,
            reply=self._reply,
            shutdown_signal=self._properties.shutdown_signal,
        )

    def _reply(
        self, delivery: Delivery, response: Any, properties: Optional[Mapping[str, Any]]
    ) -> bool:
        if self._reply_publisher is None:
            self._reply_publisher = Publisher(self._connection_manager, self._properties)
        return self._reply_publisher.reply(delivery, response, properties)

    def _cancel_consumer(self, channel) -> None:
        tag = self._consumer_tag
        if not tag or not channel.is_open or tag not in channel.consumer_tags:
            return
        try:
            channel.basic.cancel(tag)
            logger.debug("Consumer cancelled: %s", tag)
        except AMQPError as e:
            logger.warning("Error cancelling consumer %s: %s", tag, e)

    def _release(self, channel) -> None:
        """Cancel the consumer and requeue deliveries that never reached the callback."""
        self._cancel_consumer(channel)
        if not channel.is_open or self._properties.consumer_no_ack:
            return
        try:
            for raw in channel.build_inbound_messages(break_on_empty=True, auto_decode=False):
                delivery_tag = (raw.method or {}).get("delivery_tag")
                channel.basic.reject(delivery_tag=delivery_tag, requeue=True)
                logger.debug("Requeued prefetched message %s", delivery_tag)
        except AMQPError as e:
            logger.warning("Error requeueing prefetched messages: %s", e)

    def disconnect(self) -> None:
        self._connection_manager.disconnect()
