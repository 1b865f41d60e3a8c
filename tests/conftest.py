"""
Shared pytest fixtures and utilities for testing.

## In-Memory Broker

Most tests run against `FakeBroker`, an in-memory stand-in for the parts of
RabbitMQ that warren talks to through amqpstorm. No broker is needed to run the
suite.

### Core Fake Classes

- `FakeBroker`: exchanges, queues, bindings and routing
  - Predeclares the default exchange plus `amq.direct`, `amq.topic`,
    `amq.fanout` and `amq.headers`
  - Routes direct, fanout and topic (`*`/`#`) bindings; headers exchanges
    route nothing
  - Records every publish in `published` and runs `on_publish` hooks, which
    is how RPC responders are simulated
  - `refuse_connections` makes the next connect fail with
    `AMQPConnectionError`; `nack_next` makes the next confirmed publish nack
  - `on_consume` hooks run with `(channel, queue)` whenever a consumer is
    registered
  - Auto-delete queues disappear once their last consumer is cancelled or
    its channel closes

- `FakeConnection` / `FakeChannel`: the amqpstorm surface
  - `channel.exchange`, `channel.queue` and `channel.basic` accept the same
    keyword arguments as amqpstorm
  - Passive declares of missing entities raise `AMQPChannelError` with
    reply code 404 and close the channel; inequivalent redeclares raise 406
  - Deliveries honour `basic.qos` prefetch; `max_unacked_seen` records the
    highest number of unacknowledged deliveries ever outstanding
  - Acking an unknown delivery tag raises 406, like the real broker
  - Unroutable mandatory publishes queue an `AMQPMessageError`, raised by
    `check_for_errors()` (and by the publish itself in confirm mode)
  - `process_data_events()` raises `AMQPChannelError` when no consumer
    callback is registered, as amqpstorm does

### Available Fixtures

- `broker`: fresh `FakeBroker`
- `patched_connection`: patches `warren.rabbitmq.connection.Connection` so
  every `ConnectionManager` connects to `broker`
- `properties`: `AmqpProperties` for exchange `test.exchange` (topic) and
  queue `test.queue` bound with `k1,k2,k3`, with fast polling
- `connection_manager`: connected `ConnectionManager` on `broker`
- `channel`: the `FakeChannel` of `connection_manager`

### Usage Example

```python
def test_roundtrip(connection_manager, properties, broker):
    publisher = Publisher(connection_manager, properties)
    publisher.setup()
    publisher.publish("k1", "hello")

    assert broker.queue_depth("test.queue") == 1
```
"""

import itertools
import re
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from unittest.mock import patch

import pytest
from amqpstorm import AMQPChannelError, AMQPConnectionError, AMQPMessageError

from warren.config import AmqpProperties
from warren.rabbitmq.connection import ConnectionManager

_sequence = itertools.count(1)


@dataclass
class StoredMessage:
    body: bytes
    properties: dict
    exchange: str
    routing_key: str
    redelivered: bool = False
    seq: int = field(default_factory=lambda: next(_sequence))


@dataclass
class FakeQueue:
    name: str
    durable: bool = False
    exclusive: bool = False
    auto_delete: bool = False
    arguments: dict = field(default_factory=dict)
    messages: deque = field(default_factory=deque)


@dataclass
class PublishedMessage:
    exchange: str
    routing_key: str
    body: bytes
    properties: dict
    mandatory: bool


class FakeInboundMessage:
    """Shape of an ``amqpstorm.Message`` built with ``auto_decode=False``."""

    def __init__(self, body: bytes, properties: dict, method: dict) -> None:
        self.body = body
        self.properties = properties
        self.method = method

    @property
    def delivery_tag(self) -> int:
        return self.method["delivery_tag"]


def topic_matches(pattern: str, routing_key: str) -> bool:
    regex = (
        "^"
        + re.escape(pattern).replace(r"\*", r"[^.]+").replace(r"\#", r".*")
        + "$"
    )
    return re.match(regex, routing_key) is not None


class FakeBroker:
    def __init__(self) -> None:
        # name -> (type, durable, auto_delete, arguments)
        self.exchanges: dict[str, tuple] = {
            "": ("direct", True, False, {}),
            "amq.direct": ("direct", True, False, {}),
            "amq.topic": ("topic", True, False, {}),
            "amq.fanout": ("fanout", True, False, {}),
            "amq.headers": ("headers", True, False, {}),
        }
        self.queues: dict[str, FakeQueue] = {}
        self.bindings: list[tuple[str, str, str]] = []
        self.exchange_bindings: list[tuple[str, str, str]] = []
        self.connections: list["FakeConnection"] = []
        self.published: list[PublishedMessage] = []
        self.on_publish: list[Callable[[PublishedMessage], None]] = []
        self.on_consume: list[Callable[["FakeChannel", str], None]] = []
        self.calls: list[str] = []
        self.refuse_connections = False
        self.nack_next = False

    def connect(self, **params) -> "FakeConnection":
        if self.refuse_connections:
            raise AMQPConnectionError("Connection refused")
        connection = FakeConnection(self, params)
        self.connections.append(connection)
        return connection

    def route(self, exchange: str, routing_key: str, seen: Optional[set] = None) -> list[str]:
        if exchange == "":
            return [routing_key] if routing_key in self.queues else []

        seen = seen or set()
        if exchange in seen:
            return []
        seen.add(exchange)

        exchange_type = self.exchanges[exchange][0]
        matched = []
        for queue, source, key in self.bindings:
            if source == exchange and self._matches(exchange_type, key, routing_key):
                matched.append(queue)
        for destination, source, key in self.exchange_bindings:
            if source == exchange and self._matches(exchange_type, key, routing_key):
                matched.extend(self.route(destination, routing_key, seen))

        # a message lands at most once in each queue
        return list(dict.fromkeys(matched))

    @staticmethod
    def _matches(exchange_type: str, binding_key: str, routing_key: str) -> bool:
        if exchange_type == "fanout":
            return True
        if exchange_type == "topic":
            return topic_matches(binding_key, routing_key)
        if exchange_type == "direct":
            return binding_key == routing_key
        return False

    def enqueue(self, exchange: str, routing_key: str, body: Any, properties: Optional[dict] = None) -> list[str]:
        if isinstance(body, str):
            body = body.encode("utf-8")
        queues = self.route(exchange, routing_key)
        for name in queues:
            self.queues[name].messages.append(
                StoredMessage(body, dict(properties or {}), exchange, routing_key)
            )
        return queues

    def requeue(self, queue_name: str, stored: StoredMessage) -> None:
        queue = self.queues.get(queue_name)
        if queue is None:
            return
        stored.redelivered = True
        queue.messages.append(stored)
        queue.messages = deque(sorted(queue.messages, key=lambda m: m.seq))

    def dead_letter(self, queue_name: str, stored: StoredMessage) -> None:
        queue = self.queues.get(queue_name)
        if queue is None:
            return
        exchange = queue.arguments.get("x-dead-letter-exchange")
        if exchange is None or exchange not in self.exchanges:
            return
        routing_key = queue.arguments.get("x-dead-letter-routing-key", stored.routing_key)
        self.enqueue(exchange, routing_key, stored.body, stored.properties)

    def release(self, queue_name: str) -> None:
        queue = self.queues.get(queue_name)
        if queue is None or not queue.auto_delete or self.consumer_count(queue_name):
            return
        del self.queues[queue_name]
        self.bindings = [b for b in self.bindings if b[0] != queue_name]

    def queue_depth(self, name: str) -> int:
        return len(self.queues[name].messages)

    def bodies(self, name: str) -> list[bytes]:
        return [m.body for m in self.queues[name].messages]

    def consumer_count(self, name: str) -> int:
        return sum(
            1
            for connection in self.connections
            for channel in connection.channels
            if channel.is_open
            for queue in channel.consumers.values()
            if queue == name
        )

    def responder(self, routing_key: str, reply: Any, decoy: bool = False) -> None:
        """
        Answer requests published with ``routing_key`` by enqueueing a reply on
        their reply_to queue, optionally preceded by a reply for another call.
        """

        def on_publish(published: PublishedMessage) -> None:
            reply_to = published.properties.get("reply_to")
            if published.routing_key != routing_key or not reply_to:
                return
            correlation_id = published.properties.get("correlation_id")
            if decoy:
                self.enqueue("", reply_to, b"decoy", {"correlation_id": "not-" + str(correlation_id)})
            self.enqueue("", reply_to, reply, {"correlation_id": correlation_id})

        self.on_publish.append(on_publish)


class FakeConnection:
    def __init__(self, broker: FakeBroker, params: dict) -> None:
        self.broker = broker
        self.params = params
        self.is_open = True
        self.channels: list["FakeChannel"] = []
        self.errors: list[Exception] = []

    def channel(self) -> "FakeChannel":
        if not self.is_open:
            raise AMQPConnectionError("connection closed")
        channel = FakeChannel(self.broker, self)
        self.channels.append(channel)
        return channel

    def check_for_errors(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    def close(self) -> None:
        for channel in self.channels:
            channel.close()
        self.is_open = False


class FakeChannel:
    def __init__(self, broker: FakeBroker, connection: FakeConnection) -> None:
        self.broker = broker
        self.connection = connection
        self.is_open = True
        self.confirming_deliveries = False
        self.confirm_calls = 0
        self.exceptions: list[Exception] = []
        self.consumers: dict[str, str] = {}
        self.consumer_callbacks: dict[str, Callable] = {}
        self.no_ack: dict[str, bool] = {}
        self.unacked: dict[int, tuple[str, StoredMessage]] = {}
        self.inbound: deque = deque()
        self.prefetch_count = 0
        self.qos_calls: list[dict] = []
        self.acked: list[int] = []
        self.rejected: list[tuple[int, bool]] = []
        self.max_unacked_seen = 0
        self._delivery_tags = itertools.count(1)

        self.basic = FakeBasic(self)
        self.queue = FakeQueueOps(self)
        self.exchange = FakeExchangeOps(self)

    @property
    def consumer_tags(self) -> list[str]:
        return list(self.consumers)

    def fail(self, reply_code: int, text: str) -> None:
        self.close()
        raise AMQPChannelError(text, reply_code=reply_code)

    def confirm_deliveries(self) -> None:
        self.confirm_calls += 1
        self.confirming_deliveries = True

    def check_for_errors(self) -> None:
        if self.exceptions:
            raise self.exceptions.pop(0)
        if not self.is_open:
            raise AMQPChannelError("channel closed")

    def process_data_events(self) -> None:
        if not self.consumer_callbacks:
            raise AMQPChannelError("no consumer callback defined")
        self.dispatch()

    def dispatch(self) -> None:
        for tag, queue_name in list(self.consumers.items()):
            queue = self.broker.queues.get(queue_name)
            if queue is None:
                # the broker cancels consumers of deleted queues
                del self.consumers[tag]
                continue
            while queue.messages:
                no_ack = self.no_ack[tag]
                if not no_ack and self.prefetch_count and len(self.unacked) >= self.prefetch_count:
                    break
                stored = queue.messages.popleft()
                delivery_tag = next(self._delivery_tags)
                if not no_ack:
                    self.unacked[delivery_tag] = (queue_name, stored)
                    self.max_unacked_seen = max(self.max_unacked_seen, len(self.unacked))
                self.inbound.append(
                    FakeInboundMessage(
                        stored.body,
                        dict(stored.properties),
                        {
                            "delivery_tag": delivery_tag,
                            "redelivered": stored.redelivered,
                            "exchange": stored.exchange,
                            "routing_key": stored.routing_key,
                            "consumer_tag": tag,
                        },
                    )
                )

    def build_inbound_messages(self, break_on_empty: bool = False, to_tuple: bool = False,
                               auto_decode: bool = True, message_impl=None):
        self.check_for_errors()
        while self.is_open:
            self.dispatch()
            if not self.inbound:
                break
            yield self.inbound.popleft()

    def close(self) -> None:
        if not self.is_open:
            return
        self.is_open = False
        consumed = set(self.consumers.values())
        self.consumers.clear()
        self.consumer_callbacks.clear()
        self.inbound.clear()
        for queue_name, stored in self.unacked.values():
            self.broker.requeue(queue_name, stored)
        self.unacked.clear()
        for queue_name in consumed:
            self.broker.release(queue_name)


class FakeBasic:
    def __init__(self, channel: FakeChannel) -> None:
        self._channel = channel
        self._broker = channel.broker

    def qos(self, prefetch_count: int = 0, prefetch_size: int = 0, global_: bool = False) -> None:
        self._broker.calls.append("basic.qos")
        self._channel.prefetch_count = prefetch_count
        self._channel.qos_calls.append(
            {"prefetch_count": prefetch_count, "prefetch_size": prefetch_size, "global_": global_}
        )

    def consume(self, callback=None, queue: str = "", consumer_tag: str = "",
                exclusive: bool = False, no_ack: bool = False, no_local: bool = False,
                arguments=None) -> str:
        self._broker.calls.append("basic.consume")
        if queue not in self._broker.queues:
            self._channel.fail(404, f"NOT_FOUND - no queue '{queue}'")
        tag = consumer_tag or f"amq.ctag-{uuid.uuid4().hex}"
        self._channel.consumers[tag] = queue
        self._channel.no_ack[tag] = no_ack
        if callback is not None:
            self._channel.consumer_callbacks[tag] = callback
        for hook in list(self._broker.on_consume):
            hook(self._channel, queue)
        return tag

    def cancel(self, consumer_tag: str = "") -> None:
        self._broker.calls.append("basic.cancel")
        queue = self._channel.consumers.pop(consumer_tag, None)
        self._channel.consumer_callbacks.pop(consumer_tag, None)
        if queue is not None:
            self._broker.release(queue)

    def publish(self, body, routing_key: str, exchange: str = "", properties=None,
                mandatory: bool = False, immediate: bool = False):
        self._broker.calls.append("basic.publish")
        if not self._channel.is_open:
            raise AMQPChannelError("channel closed")
        if exchange not in self._broker.exchanges:
            self._channel.fail(404, f"NOT_FOUND - no exchange '{exchange}'")
        if isinstance(body, str):
            body = body.encode("utf-8")

        published = PublishedMessage(exchange, routing_key, body, dict(properties or {}), mandatory)
        self._broker.published.append(published)
        queues = self._broker.enqueue(exchange, routing_key, body, published.properties)
        if mandatory and not queues:
            self._channel.exceptions.append(
                AMQPMessageError(
                    f"Message not delivered: NO_ROUTE (312) to '{routing_key}' "
                    f"from exchange '{exchange}'",
                    reply_code=312,
                )
            )
        for hook in list(self._broker.on_publish):
            hook(published)

        if not self._channel.confirming_deliveries:
            return None
        if mandatory:
            self._channel.check_for_errors()
        if self._broker.nack_next:
            self._broker.nack_next = False
            return False
        return True

    def ack(self, delivery_tag: int = 0, multiple: bool = False) -> None:
        self._broker.calls.append("basic.ack")
        if delivery_tag not in self._channel.unacked:
            self._channel.fail(406, f"PRECONDITION_FAILED - unknown delivery tag {delivery_tag}")
        del self._channel.unacked[delivery_tag]
        self._channel.acked.append(delivery_tag)

    def reject(self, delivery_tag: int = 0, requeue: bool = True) -> None:
        self._broker.calls.append("basic.reject")
        if delivery_tag not in self._channel.unacked:
            self._channel.fail(406, f"PRECONDITION_FAILED - unknown delivery tag {delivery_tag}")
        queue_name, stored = self._channel.unacked.pop(delivery_tag)
        self._channel.rejected.append((delivery_tag, requeue))
        if requeue:
            self._broker.requeue(queue_name, stored)
        else:
            self._broker.dead_letter(queue_name, stored)

    def nack(self, delivery_tag: int = 0, multiple: bool = False, requeue: bool = True) -> None:
        self.reject(delivery_tag=delivery_tag, requeue=requeue)


class FakeQueueOps:
    def __init__(self, channel: FakeChannel) -> None:
        self._channel = channel
        self._broker = channel.broker

    def _info(self, queue: FakeQueue) -> dict:
        return {
            "queue": queue.name,
            "message_count": len(queue.messages),
            "consumer_count": self._broker.consumer_count(queue.name),
        }

    def declare(self, queue: str = "", passive: bool = False, durable: bool = False,
                exclusive: bool = False, auto_delete: bool = False, arguments=None) -> dict:
        self._broker.calls.append("queue.declare")
        existing = self._broker.queues.get(queue)
        if passive:
            if existing is None:
                self._channel.fail(404, f"NOT_FOUND - no queue '{queue}'")
            return self._info(existing)

        if not queue:
            queue = f"amq.gen-{uuid.uuid4().hex}"
        arguments = dict(arguments or {})
        if existing is not None:
            if (existing.durable, existing.exclusive, existing.auto_delete, existing.arguments) != (
                durable, exclusive, auto_delete, arguments
            ):
                self._channel.fail(406, f"PRECONDITION_FAILED - inequivalent arg for queue '{queue}'")
            return self._info(existing)

        created = FakeQueue(queue, durable, exclusive, auto_delete, arguments)
        self._broker.queues[queue] = created
        return self._info(created)

    def bind(self, queue: str = "", exchange: str = "", routing_key: str = "", arguments=None) -> None:
        self._broker.calls.append("queue.bind")
        if queue not in self._broker.queues:
            self._channel.fail(404, f"NOT_FOUND - no queue '{queue}'")
        if exchange not in self._broker.exchanges:
            self._channel.fail(404, f"NOT_FOUND - no exchange '{exchange}'")
        binding = (queue, exchange, routing_key)
        if binding not in self._broker.bindings:
            self._broker.bindings.append(binding)

    def unbind(self, queue: str = "", exchange: str = "", routing_key: str = "", arguments=None) -> None:
        self._broker.calls.append("queue.unbind")
        binding = (queue, exchange, routing_key)
        if binding in self._broker.bindings:
            self._broker.bindings.remove(binding)

    def purge(self, queue: str) -> dict:
        self._broker.calls.append("queue.purge")
        if queue not in self._broker.queues:
            self._channel.fail(404, f"NOT_FOUND - no queue '{queue}'")
        purged = len(self._broker.queues[queue].messages)
        self._broker.queues[queue].messages.clear()
        return {"message_count": purged}

    def delete(self, queue: str = "", if_unused: bool = False, if_empty: bool = False) -> dict:
        self._broker.calls.append("queue.delete")
        existing = self._broker.queues.get(queue)
        if existing is None:
            return {"message_count": 0}
        if if_empty and existing.messages:
            self._channel.fail(406, f"PRECONDITION_FAILED - queue '{queue}' not empty")
        if if_unused and self._broker.consumer_count(queue):
            self._channel.fail(406, f"PRECONDITION_FAILED - queue '{queue}' in use")
        del self._broker.queues[queue]
        self._broker.bindings = [b for b in self._broker.bindings if b[0] != queue]
        return {"message_count": len(existing.messages)}


class FakeExchangeOps:
    def __init__(self, channel: FakeChannel) -> None:
        self._channel = channel
        self._broker = channel.broker

    def declare(self, exchange: str = "", exchange_type: str = "direct", passive: bool = False,
                durable: bool = False, auto_delete: bool = False, arguments=None) -> dict:
        self._broker.calls.append("exchange.declare")
        existing = self._broker.exchanges.get(exchange)
        if passive:
            if existing is None:
                self._channel.fail(404, f"NOT_FOUND - no exchange '{exchange}'")
            return {}

        arguments = dict(arguments or {})
        if existing is not None:
            if existing[:3] != (exchange_type, durable, auto_delete):
                self._channel.fail(
                    406, f"PRECONDITION_FAILED - inequivalent arg 'type' for exchange '{exchange}'"
                )
            return {}
        self._broker.exchanges[exchange] = (exchange_type, durable, auto_delete, arguments)
        return {}

    def delete(self, exchange: str = "", if_unused: bool = False) -> dict:
        self._broker.calls.append("exchange.delete")
        self._broker.exchanges.pop(exchange, None)
        self._broker.bindings = [b for b in self._broker.bindings if b[1] != exchange]
        return {}

    def bind(self, destination: str = "", source: str = "", routing_key: str = "", arguments=None) -> dict:
        self._broker.calls.append("exchange.bind")
        for name in (destination, source):
            if name not in self._broker.exchanges:
                self._channel.fail(404, f"NOT_FOUND - no exchange '{name}'")
        binding = (destination, source, routing_key)
        if binding not in self._broker.exchange_bindings:
            self._broker.exchange_bindings.append(binding)
        return {}

    def unbind(self, destination: str = "", source: str = "", routing_key: str = "", arguments=None) -> dict:
        self._broker.calls.append("exchange.unbind")
        binding = (destination, source, routing_key)
        if binding in self._broker.exchange_bindings:
            self._broker.exchange_bindings.remove(binding)
        return {}


@pytest.fixture
def broker():
    """Fresh in-memory broker."""
    return FakeBroker()


@pytest.fixture
def patched_connection(broker):
    """Route every ConnectionManager connection to ``broker``."""
    with patch(
        "warren.rabbitmq.connection.Connection", side_effect=broker.connect
    ) as connection_class:
        yield connection_class


@pytest.fixture
def properties():
    return AmqpProperties(
        exchange="test.exchange",
        exchange_type="topic",
        queue="test.queue",
        routing=["k1", "k2", "k3"],
        poll_interval=0.001,
        rpc_poll_interval=0.001,
    )


@pytest.fixture
def connection_manager(patched_connection, properties):
    manager = ConnectionManager(properties)
    manager.connect()
    yield manager
    manager.disconnect()


@pytest.fixture
def channel(connection_manager):
    return connection_manager.get_channel()
