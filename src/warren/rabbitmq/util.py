import logging
import uuid
from typing import Iterable, Optional, Union

logger = logging.getLogger(__name__)

EXCHANGE_TYPES = ("direct", "topic", "fanout", "headers")


def normalize_routing_keys(routing_keys: Optional[Union[str, Iterable[str]]]) -> list[str]:
    """
    Normalize routing keys to a list.

    Accepts a single key, a comma-separated string of keys, or an iterable of
    keys. Whitespace is stripped and empty entries are dropped; order is kept
    and duplicates are removed.

    :param routing_keys: Routing key(s) in any accepted form.
    :return: List of routing keys, possibly empty.
    """
    if routing_keys is None:
        return []
    if isinstance(routing_keys, str):
        candidates = routing_keys.split(",")
    else:
        candidates = []
        for routing_key in routing_keys:
            candidates.extend(str(routing_key).split(","))

    normalized = []
    for routing_key in candidates:
        routing_key = routing_key.strip()
        if routing_key and routing_key not in normalized:
            normalized.append(routing_key)
    return normalized


def is_valid_exchange_type(exchange_type: Optional[str]) -> bool:
    """
    Check an exchange type against the built-in types.

    Plugin exchange types (``x-delayed-message``, ``x-consistent-hash``, ...)
    are accepted by prefix; the broker reports unknown plugins itself.
    """
    if not exchange_type:
        return False
    return exchange_type in EXCHANGE_TYPES or exchange_type.startswith("x-")


def generate_name(prefix: str) -> str:
    """
    Generate a unique entity name such as ``listener-3f2a...``.

    :param prefix: Prefix for the generated name.
    :return: Generated name string.
    """
    return f"{prefix}-{uuid.uuid4().hex}"


def new_correlation_id() -> str:
    return uuid.uuid4().hex
