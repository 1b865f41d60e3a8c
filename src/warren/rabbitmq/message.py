"""
Message value objects.

``Message`` is what applications build and publish; ``Delivery`` wraps a message
received by a consumer together with its channel-scoped delivery state.
"""

import datetime
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Union

from warren.exceptions import InvalidArgument, ReplyTargetMissing

logger = logging.getLogger(__name__)

TRANSIENT = 1
PERSISTENT = 2

# Property names understood by the protocol layer (basic.properties)
WIRE_PROPERTIES = (
    "content_type",
    "content_encoding",
    "headers",
    "delivery_mode",
    "priority",
    "correlation_id",
    "reply_to",
    "expiration",
    "message_id",
    "timestamp",
    "message_type",
    "user_id",
    "app_id",
    "cluster_id",
)


def _to_bytes(body: Union[str, bytes, bytearray]) -> bytes:
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    raise InvalidArgument(f"Message body must be str or bytes, got {type(body).__name__}")


def _to_text(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


@dataclass
class Message:
    """
    A message body plus its AMQP properties.

    Setters return the message so they can be chained. The publisher snapshots
    the properties when the message is handed to the protocol layer.
    """

    body: bytes = b""
    content_type: Optional[str] = None
    properties: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.body = _to_bytes(self.body)
        self.properties = dict(self.properties)
        if self.content_type is None:
            self.content_type = self.properties.pop("content_type", None)
        else:
            self.properties.pop("content_type", None)
        if "priority" in self.properties and self.properties["priority"] is not None:
            self.set_priority(self.properties["priority"])

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.body)

    def get(self, name: str, default: Any = None) -> Any:
        if name == "content_type":
            return self.content_type if self.content_type is not None else default
        return self.properties.get(name, default)

    def set(self, name: str, value: Any) -> "Message":
        if name == "content_type":
            self.content_type = value
        elif name == "priority":
            self.set_priority(value)
        elif value is None:
            self.properties.pop(name, None)
        else:
            self.properties[name] = value
        return self

    def set_priority(self, priority: int) -> "Message":
        # clamp to the protocol's octet range
        self.properties["priority"] = max(0, min(255, int(priority)))
        return self

    @property
    def priority(self) -> Optional[int]:
        return self.properties.get("priority")

    def set_correlation_id(self, correlation_id: str) -> "Message":
        return self.set("correlation_id", correlation_id)

    @property
    def correlation_id(self) -> Optional[str]:
        return self.properties.get("correlation_id")

    def set_reply_to(self, reply_to: str) -> "Message":
        return self.set("reply_to", reply_to)

    @property
    def reply_to(self) -> Optional[str]:
        return self.properties.get("reply_to")

    def set_message_id(self, message_id: str) -> "Message":
        return self.set("message_id", message_id)

    @property
    def message_id(self) -> Optional[str]:
        return self.properties.get("message_id")

    def set_type(self, message_type: str) -> "Message":
        return self.set("message_type", message_type)

    @property
    def message_type(self) -> Optional[str]:
        return self.properties.get("message_type")

    def set_delivery_mode(self, delivery_mode: int) -> "Message":
        if delivery_mode not in (TRANSIENT, PERSISTENT):
            raise InvalidArgument(
                f"delivery_mode must be {TRANSIENT} (transient) or {PERSISTENT} (persistent)"
            )
        return self.set("delivery_mode", delivery_mode)

    @property
    def delivery_mode(self) -> Optional[int]:
        return self.properties.get("delivery_mode")

    def set_expiration(self, milliseconds: int) -> "Message":
        # per-message TTL travels as a string
        return self.set("expiration", str(int(milliseconds)))

    @property
    def headers(self) -> dict[str, Any]:
        return dict(self.properties.get("headers") or {})

    def get_header(self, key: str, default: Any = None) -> Any:
        return self.headers.get(key, default)

    def set_header(self, key: str, value: Any) -> "Message":
        headers = self.headers
        headers[key] = value
        self.properties["headers"] = headers
        return self

    def set_headers(self, headers: Mapping[str, Any]) -> "Message":
        merged = self.headers
        merged.update(headers)
        self.properties["headers"] = merged
        return self

    def remove_header(self, key: str) -> "Message":
        headers = self.headers
        headers.pop(key, None)
        if headers:
            self.properties["headers"] = headers
        else:
            self.properties.pop("headers", None)
        return self

    def to_wire(self) -> tuple[bytes, dict[str, Any]]:
        """
        Snapshot the message for the protocol layer.

        :return: body and a fresh property dict; later changes to this message
                 do not affect the snapshot.
        """
        properties = {
            key: value
            for key, value in self.properties.items()
            if key in WIRE_PROPERTIES and value is not None
        }
        if "headers" in properties:
            properties["headers"] = dict(properties["headers"])
        if self.content_type is not None:
            properties["content_type"] = self.content_type
        return self.body, properties

    @classmethod
    def from_wire(cls, body: Union[str, bytes], properties: Optional[Mapping[str, Any]]) -> "Message":
        properties = {
            _to_text(key): _to_text(value) if key != "headers" else value
            for key, value in (properties or {}).items()
            if value is not None
        }
        return cls(body=body, properties=properties)


class MessageFactory:
    """Turns application payloads into ``Message`` objects with sane defaults."""

    def __init__(
        self,
        content_type: str = "text/plain",
        delivery_mode: int = PERSISTENT,
    ) -> None:
        self._content_type = content_type
        self._delivery_mode = delivery_mode

    def create(
        self,
        message: Any,
        application_headers: Optional[Mapping[str, Any]] = None,
    ) -> Message:
        """
        Wrap a payload in a message.

        A ``Message`` passes through as is when there are no application
        headers. Otherwise a copy is returned carrying the application headers
        beneath its own, which win on conflicting keys.

        Mappings and lists are serialized to JSON with an ``application/json``
        content type; strings and bytes are sent as-is.
        """
        if isinstance(message, Message):
            if not application_headers:
                return message
            headers = dict(application_headers)
            headers.update(message.headers)
            return Message(
                body=message.body,
                content_type=message.content_type,
                properties={**message.properties, "headers": headers},
            )

        content_type = self._content_type
        if isinstance(message, (dict, list)):
            message = json.dumps(message)
            content_type = "application/json"

        created = Message(
            body=message,
            content_type=content_type,
            properties={"delivery_mode": self._delivery_mode},
        )
        if application_headers:
            created.set_headers(application_headers)
        return created

    def create_with_properties(
        self, body: Union[str, bytes], properties: Optional[Mapping[str, Any]] = None
    ) -> Message:
        return Message(body=body, properties=dict(properties or {}))


class Resolution(Enum):
    ACKED = "acked"
    REJECTED = "rejected"
    REQUEUED = "requeued"
    AUTO_ACKED = "auto-acked"


@dataclass
class Delivery:
    """
    A received message and its delivery context.

    The delivery tag is scoped to ``channel``; exactly one terminal action
    (ack or reject) may be issued for it, recorded in ``resolution``.
    """

    message: Message
    delivery_tag: int
    redelivered: bool = False
    routing_key: str = ""
    exchange: str = ""
    consumer_tag: str = ""
    channel: Any = field(default=None, repr=False, compare=False)
    resolution: Optional[Resolution] = None
    received_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    @property
    def body(self) -> bytes:
        return self.message.body

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not None

    @classmethod
    def from_amqpstorm(cls, message: Any, channel: Any, no_ack: bool = False) -> "Delivery":
        """
        Build a delivery from an inbound ``amqpstorm.Message``.

        :param message: message yielded by the channel
        :param channel: channel the delivery tag belongs to
        :param no_ack: whether the broker considers it acknowledged already
        """
        method = message.method or {}
        return cls(
            message=Message.from_wire(message.body, message.properties),
            delivery_tag=method.get("delivery_tag"),
            redelivered=bool(method.get("redelivered", False)),
            routing_key=_to_text(method.get("routing_key", "")),
            exchange=_to_text(method.get("exchange", "")),
            consumer_tag=_to_text(method.get("consumer_tag", "")),
            channel=channel,
            resolution=Resolution.AUTO_ACKED if no_ack else None,
        )


def build_reply(
    request: Union[Message, Delivery],
    response: Any,
    content_type: Optional[str] = None,
    properties: Optional[Mapping[str, Any]] = None,
) -> tuple[str, Message]:
    """
    Build the reply for an RPC request.

    :param request: the request message (or its delivery)
    :param response: reply body, or a ready ``Message``
    :param content_type: content type applied when ``response`` is not a Message
    :param properties: extra reply properties
    :return: the reply queue name and the reply message carrying the request's
             correlation id unchanged
    :raises ReplyTargetMissing: if the request has no reply_to property
    """
    if isinstance(request, Delivery):
        request = request.message

    reply_to = request.reply_to
    if not reply_to:
        raise ReplyTargetMissing(correlation_id=request.correlation_id)

    if isinstance(response, Message):
        reply = response
    else:
        if isinstance(response, (dict, list)):
            response = json.dumps(response)
        reply = Message(
            body=response,
            content_type=content_type,
            properties={"delivery_mode": TRANSIENT},
        )
    for key, value in (properties or {}).items():
        reply.set(key, value)
    if request.correlation_id is not None:
        reply.set_correlation_id(request.correlation_id)
    return reply_to, reply
