"""
RabbitMQ publisher implementation.

Publishes single or batched messages to the configured exchange, with optional
publisher confirms and mandatory routing.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

from amqpstorm import AMQPError, AMQPMessageError

from warren.config import AmqpProperties
from warren.exceptions import ConfirmsNotEnabled

from .base import ChannelProvider, MessagePublisherInterface
from .message import Delivery, Message, MessageFactory, build_reply
from .topology import TopologyDeclarer

logger = logging.getLogger(__name__)

MIN_PUBLISH_TIMEOUT = 1.0
MAX_RETURN_DRAIN = 1000


class ConfirmOutcome(Enum):
    ACK = "ack"
    NACK = "nack"
    RETURNED = "returned"
    TIMED_OUT = "timed_out"


@dataclass
class PendingConfirm:
    """A publish awaiting (or resolved by) a broker confirmation."""

    sequence: Optional[int]
    routing_key: str
    exchange: str
    message: Optional[Message] = None
    outcome: Optional[ConfirmOutcome] = None
    error: Optional[Exception] = None


ConfirmHandler = Callable[[PendingConfirm], None]


def _returned(error: AMQPMessageError) -> PendingConfirm:
    # basic.return frames carry no publish sequence number
    return PendingConfirm(
        sequence=None,
        routing_key="",
        exchange="",
        outcome=ConfirmOutcome.RETURNED,
        error=error,
    )


class ConfirmTracker:
    """Publish sequence number -> pending confirm, in publish order."""

    def __init__(self) -> None:
        self._next_sequence = 1
        self._pending: "OrderedDict[int, PendingConfirm]" = OrderedDict()

    def add(self, routing_key: str, exchange: str, message: Message) -> PendingConfirm:
        entry = PendingConfirm(
            sequence=self._next_sequence,
            routing_key=routing_key,
            exchange=exchange,
            message=message,
        )
        self._pending[entry.sequence] = entry
        self._next_sequence += 1
        return entry

    def resolve(
        self,
        sequence: int,
        outcome: ConfirmOutcome,
        error: Optional[Exception] = None,
    ) -> Optional[PendingConfirm]:
        entry = self._pending.pop(sequence, None)
        if entry is not None:
            entry.outcome = outcome
            entry.error = error
        return entry

    def expire(self) -> list[PendingConfirm]:
        """Drop every pending entry, marking it timed out."""
        expired = list(self._pending.values())
        for entry in expired:
            entry.outcome = ConfirmOutcome.TIMED_OUT
        self._pending.clear()
        return expired

    @property
    def pending(self) -> list[PendingConfirm]:
        return list(self._pending.values())

    def __len__(self) -> int:
        return len(self._pending)


class Publisher(MessagePublisherInterface):
    """
    Publishes to the exchange named by the properties.

    Confirms are enabled lazily: by a mandatory publish, by the
    ``publisher_confirms`` property, or by ``enable_publisher_confirms()``.
    """

    def __init__(
        self,
        connection_manager: ChannelProvider,
        properties: Optional[AmqpProperties] = None,
        message_factory: Optional[MessageFactory] = None,
    ) -> None:
        self._connection_manager = connection_manager
        self._properties = properties or AmqpProperties()
        self._message_factory = message_factory or MessageFactory()
        self._declarer = TopologyDeclarer(connection_manager, self._properties)

        self._tracker = ConfirmTracker()
        self._confirms_channel: Any = None
        self._confirms_enabled = False
        self._publish_failed = False
        self._batch: list[tuple[str, Message, bool]] = []

        self._ack_handler: Optional[ConfirmHandler] = None
        self._nack_handler: Optional[ConfirmHandler] = None
        self._return_handler: Optional[ConfirmHandler] = None

    @property
    def connection_manager(self) -> ChannelProvider:
        return self._connection_manager

    @property
    def properties(self) -> AmqpProperties:
        return self._properties

    @property
    def publish_failed(self) -> bool:
        """Whether the last publish, or any message of the last flush, was nacked or returned."""
        return self._publish_failed

    @property
    def publish_timeout(self) -> float:
        return max(MIN_PUBLISH_TIMEOUT, float(self._properties.publish_timeout))

    @property
    def confirms_enabled(self) -> bool:
        return self._confirms_enabled

    @property
    def pending_confirms(self) -> list[PendingConfirm]:
        return self._tracker.pending

    @property
    def batch_size(self) -> int:
        return len(self._batch)

    @property
    def batch(self) -> list[tuple[str, Message, bool]]:
        """Queued (routing_key, message, mandatory) entries, oldest first."""
        return list(self._batch)

    def setup(self) -> None:
        """Connect and declare the configured exchange, queue and bindings."""
        self._connection_manager.connect()
        self._declarer.declare_and_bind()

    def set_ack_handler(self, handler: Optional[ConfirmHandler]) -> None:
        self._ack_handler = handler

    def set_nack_handler(self, handler: Optional[ConfirmHandler]) -> None:
        self._nack_handler = handler

    def set_return_handler(self, handler: Optional[ConfirmHandler]) -> None:
        self._return_handler = handler

    def enable_publisher_confirms(self) -> None:
        """Put the channel into confirm mode. Idempotent per channel."""
        channel = self._connection_manager.get_channel()
        if self._confirms_enabled and channel is self._confirms_channel:
            return
        channel.confirm_deliveries()
        self._confirms_channel = channel
        self._confirms_enabled = True
        logger.info("Publisher confirms enabled on channel %s", channel)

    def publish(
        self,
        routing_key: str,
        message: Any,
        mandatory: bool = False,
        exchange: Optional[str] = None,
    ) -> bool:
        """
        Publish one message.

        :param routing_key: routing key for the exchange
        :param message: a ``Message``, or a payload for the message factory
        :param mandatory: have the broker return the message if unroutable
        :param exchange: publish to this exchange instead of the configured one
        :return: True on local success (no confirms) or broker ack; False when
                 the broker nacked or returned the message
        """
        self._publish_failed = False
        mandatory = mandatory or self._properties.mandatory
        if mandatory or self._properties.publisher_confirms:
            self.enable_publisher_confirms()

        message = self._message_factory.create(
            message, self._properties.application_headers or None
        )
        exchange = self._properties.exchange if exchange is None else exchange
        result = self._publish(routing_key, message, mandatory, exchange)

        if mandatory and result:
            result = self.wait_for_confirms_and_returns(self.publish_timeout)
        return result

    def _publish(self, routing_key: str, message: Message, mandatory: bool, exchange: str) -> bool:
        channel = self._connection_manager.get_channel()
        body, properties = message.to_wire()

        if not self._confirms_enabled:
            channel.basic.publish(
                body=body,
                routing_key=routing_key,
                exchange=exchange,
                properties=properties,
                mandatory=mandatory,
            )
            logger.debug(
                "Message published to exchange %s with routing key %s",
                exchange,
                routing_key,
            )
            return True

        entry = self._tracker.add(routing_key, exchange, message)
        try:
            acked = channel.basic.publish(
                body=body,
                routing_key=routing_key,
                exchange=exchange,
                properties=properties,
                mandatory=mandatory,
            )
        except AMQPMessageError as e:
            self._tracker.resolve(entry.sequence, ConfirmOutcome.RETURNED, e)
            self._on_return(entry)
            return False

        if acked:
            self._tracker.resolve(entry.sequence, ConfirmOutcome.ACK)
            logger.debug(
                "Message %s confirmed by broker (exchange=%s routing_key=%s)",
                entry.sequence,
                exchange,
                routing_key,
            )
            if self._ack_handler:
                self._ack_handler(entry)
            return True

        self._tracker.resolve(entry.sequence, ConfirmOutcome.NACK)
        self._on_nack(entry)
        return False

    def _on_nack(self, entry: PendingConfirm) -> None:
        self._publish_failed = True
        logger.warning(
            "Message %s nacked by broker (exchange=%s routing_key=%s)",
            entry.sequence,
            entry.exchange,
            entry.routing_key,
        )
        if self._nack_handler:
            self._nack_handler(entry)

    def _on_return(self, entry: PendingConfirm) -> None:
        self._publish_failed = True
        logger.warning(
            "Message returned as unroutable (exchange=%s routing_key=%s): %s",
            entry.exchange,
            entry.routing_key,
            entry.error,
        )
        if self._return_handler:
            self._return_handler(entry)

    def wait_for_confirms(self, timeout: float) -> bool:
        """
        Block until no confirm is pending or ``timeout`` seconds elapse.

        :return: True if every publish was acked or nacked in time; False on
                 timeout, in which case the pending entries are discarded
        :raises ConfirmsNotEnabled: if confirms were never enabled
        :raises AMQPError: if the channel or connection failed while waiting;
                 the pending entries are discarded first
        """
        if not self._confirms_enabled:
            raise ConfirmsNotEnabled()

        channel = self._connection_manager.get_channel()
        deadline = time.monotonic() + timeout
        while len(self._tracker):
            if time.monotonic() >= deadline:
                expired = self._tracker.expire()
                logger.warning(
                    "Timed out after %ss waiting for %s publisher confirms",
                    timeout,
                    len(expired),
                )
                return False
            try:
                channel.check_for_errors()
            except AMQPMessageError as e:
                self._on_return(_returned(e))
                continue
            except AMQPError:
                # confirms for a dead channel never arrive
                self._tracker.expire()
                raise
            time.sleep(self._properties.poll_interval)
        return True

    def wait_for_confirms_and_returns(self, timeout: float) -> bool:
        """
        Deliver any pending basic.return notifications to the return handler,
        then wait for confirms.
        """
        if not self._confirms_enabled:
            raise ConfirmsNotEnabled()

        channel = self._connection_manager.get_channel()
        for _ in range(MAX_RETURN_DRAIN):
            try:
                channel.check_for_errors()
            except AMQPMessageError as e:
                self._on_return(_returned(e))
                continue
            break

        confirmed = self.wait_for_confirms(timeout)
        return confirmed and not self._publish_failed

    def reply(
        self,
        request: Union[Message, Delivery],
        response: Any,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Publish a response to the request's reply_to queue via the default exchange.

        The request's correlation id is copied unchanged. The request itself is
        not acknowledged here.

        :raises ReplyTargetMissing: if the request has no reply_to; nothing is published
        """
        reply_to, reply = build_reply(
            request,
            response,
            content_type=self._properties.content_type,
            properties=properties,
        )
        logger.debug(
            "Replying to %s (correlation_id=%s)", reply_to, reply.correlation_id
        )
        return self.publish(reply_to, reply, exchange="")

    def batch_publish(self, routing_key: str, message: Any, mandatory: bool = False) -> None:
        """Queue a message locally until ``flush_batch()``."""
        message = self._message_factory.create(
            message, self._properties.application_headers or None
        )
        self._batch.append((routing_key, message, mandatory))

    def flush_batch(self) -> int:
        """
        Publish every queued message in order.

        A message leaves the buffer only once the broker accepted it. Nacked
        and returned messages are put back in their original order and
        ``publish_failed`` is set, so a later flush retries exactly those.
        If the channel fails mid-flush the unsent tail stays queued too.

        :return: the number of messages accepted
        """
        if not self._batch:
            return 0

        published = 0
        failed: list[tuple[str, Message, bool]] = []
        try:
            while self._batch:
                entry = self._batch[0]
                routing_key, message, mandatory = entry
                if self.publish(routing_key, message, mandatory=mandatory):
                    published += 1
                else:
                    failed.append(entry)
                self._batch.pop(0)
        finally:
            self._batch[:0] = failed

        self._publish_failed = bool(failed)
        if failed:
            logger.warning(
                "Batch flush: %s messages published, %s nacked or returned",
                published,
                len(failed),
            )
        else:
            logger.info("Batch of %s messages published", published)
        return published

    def disconnect(self) -> None:
        self._connection_manager.disconnect()
