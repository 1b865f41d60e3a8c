"""
warren: a synchronous AMQP 0-9-1 messaging layer for RabbitMQ.
"""

import logging

from .client import AmqpClient
from .config import AmqpProperties, Profiles

__version__ = "0.1.0"

__all__ = [
    "AmqpClient",
    "AmqpProperties",
    "Profiles",
]

logging.getLogger(__name__).addHandler(logging.NullHandler())
