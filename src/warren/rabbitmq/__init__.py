"""
RabbitMQ messaging implementation.

This package provides the connection, topology, publish, consume and RPC layers
on top of amqpstorm.

Public API:
    - ConnectionManager: One connection and one channel, opened on demand
    - TopologyDeclarer: Declares exchanges, queues and bindings
    - Publisher: Single and batched publishing with confirms
    - Consumer, Resolver: Receive loop and per-delivery ack/reject/stop handle
    - RpcCoordinator, RpcServer: Request/reply on top of publish and consume
    - Message, MessageFactory, Delivery: Message value objects
"""

from .arguments import ArgumentTable, exchange_arguments, queue_arguments
from .base import ConsumeOutcome, ConsumerState, Prefetch, QueueInfo
from .connection import ConnectionManager, build_ssl_options
from .message import Delivery, Message, MessageFactory, Resolution, build_reply
from .publisher import ConfirmOutcome, PendingConfirm, Publisher
from .rpc import RpcCoordinator, RpcServer
from .subscriber import Consumer, Resolver
from .topology import TopologyDeclarer
from .util import normalize_routing_keys

__all__ = [
    # Connection and topology
    "ConnectionManager",
    "TopologyDeclarer",
    "build_ssl_options",
    # Publishing
    "Publisher",
    "PendingConfirm",
    "ConfirmOutcome",
    # Consuming
    "Consumer",
    "Resolver",
    "ConsumeOutcome",
    "ConsumerState",
    "Prefetch",
    # RPC
    "RpcCoordinator",
    "RpcServer",
    # Data types
    "Message",
    "MessageFactory",
    "Delivery",
    "Resolution",
    "QueueInfo",
    "ArgumentTable",
    # Helpers
    "build_reply",
    "exchange_arguments",
    "queue_arguments",
    "normalize_routing_keys",
]
