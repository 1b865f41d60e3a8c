"""
Protocol argument tables for queue and exchange declarations.

Arguments may be supplied either as a flat mapping (``{"x-max-length": 10}``)
or as a typed table in AMQP field-table notation (``{"x-max-length": ("I", 10)}``).
Both are normalized into an ``ArgumentTable`` before they reach the broker, so
the two spellings always declare identical entities.
"""

import datetime
import decimal
import logging
from collections.abc import Mapping
from typing import Any, Iterator, Optional

from warren.exceptions import InvalidArgument

logger = logging.getLogger(__name__)

# AMQP 0-9-1 / RabbitMQ field-table type codes
_INTEGER_CODES = frozenset("bBsuIiLl")
_FLOAT_CODES = frozenset("fd")
TYPE_CODES = frozenset(_INTEGER_CODES | _FLOAT_CODES | set("StDTFAVx"))

# Obsolete mirrored-queue policy; the broker rejects it as a queue argument
QUEUE_ARGUMENT_BLOCKLIST = ("x-ha-policy",)

QUEUE_TYPES = ("classic", "quorum", "stream")
OVERFLOW_BEHAVIOURS = ("drop-head", "reject-publish", "reject-publish-dlx")
QUEUE_MODES = ("default", "lazy")
MASTER_LOCATORS = ("min-masters", "client-local", "random")


def _is_typed_pair(value: Any) -> bool:
    return (
        isinstance(value, (tuple, list))
        and len(value) == 2
        and isinstance(value[0], str)
        and value[0] in TYPE_CODES
    )


def _coerce_typed(key: str, code: str, value: Any) -> Any:
    try:
        if code == "S":
            return str(value)
        if code == "t":
            return bool(value)
        if code in _INTEGER_CODES:
            return int(value)
        if code in _FLOAT_CODES:
            return float(value)
        if code == "D":
            return decimal.Decimal(value)
        if code == "T":
            if isinstance(value, datetime.datetime):
                return value
            return datetime.datetime.fromtimestamp(int(value), tz=datetime.timezone.utc)
        if code == "F":
            return ArgumentTable(value).as_dict()
        if code == "A":
            return [_coerce_flat(key, item) for item in value]
        if code == "x":
            return bytes(value)
    except (TypeError, ValueError, decimal.InvalidOperation) as e:
        raise InvalidArgument(
            f"Argument {key!r} is not a valid {code!r} value: {value!r}"
        ) from e
    # "V" (void)
    return None


def _coerce_flat(key: str, value: Any) -> Any:
    if _is_typed_pair(value):
        return _coerce_typed(key, value[0], value[1])
    if value is None or isinstance(
        value,
        (bool, int, float, str, bytes, decimal.Decimal, datetime.datetime),
    ):
        return value
    if isinstance(value, Mapping):
        return ArgumentTable(value).as_dict()
    if isinstance(value, (list, tuple)):
        return [_coerce_flat(key, item) for item in value]
    raise InvalidArgument(
        f"Argument {key!r} has unsupported type {type(value).__name__}"
    )


class ArgumentTable(Mapping):
    """
    Normalized, read-only protocol argument table.

    Values are plain Python types: int, str, bool, float, Decimal, datetime,
    bytes, nested dicts and lists. ``None`` values are dropped.
    """

    def __init__(
        self,
        arguments: Optional[Mapping[str, Any]] = None,
        exclude: tuple[str, ...] = (),
    ) -> None:
        self._data: dict[str, Any] = {}
        if arguments is None:
            return
        if isinstance(arguments, ArgumentTable):
            arguments = arguments._data
        if not isinstance(arguments, Mapping):
            raise InvalidArgument(
                f"Arguments must be a mapping, got {type(arguments).__name__}"
            )
        for key, value in arguments.items():
            if key in exclude:
                logger.debug("Dropping unsupported argument %s", key)
                continue
            coerced = _coerce_flat(str(key), value)
            if coerced is not None:
                self._data[str(key)] = coerced

    @classmethod
    def normalize(
        cls, arguments: Any, exclude: tuple[str, ...] = ()
    ) -> "ArgumentTable":
        """Normalize a flat mapping, typed table, ArgumentTable or None."""
        if isinstance(arguments, ArgumentTable) and not exclude:
            return arguments
        return cls(arguments, exclude=exclude)

    def as_dict(self) -> dict[str, Any]:
        return dict(self._data)

    def to_wire(self) -> Optional[dict[str, Any]]:
        """Arguments in the shape the protocol layer expects (None when empty)."""
        return self.as_dict() or None

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ArgumentTable({self._data!r})"


def _non_negative(name: str, value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidArgument(f"{name} must be a non-negative integer, got {value!r}")
    return value


def _one_of(name: str, value: Optional[str], allowed: tuple[str, ...]) -> Optional[str]:
    if value is not None and value not in allowed:
        raise InvalidArgument(
            f"{name} must be one of {', '.join(allowed)}, got {value!r}"
        )
    return value


def queue_arguments(
    message_ttl: Optional[int] = None,
    expires: Optional[int] = None,
    max_length: Optional[int] = None,
    max_length_bytes: Optional[int] = None,
    overflow: Optional[str] = None,
    dead_letter_exchange: Optional[str] = None,
    dead_letter_routing_key: Optional[str] = None,
    max_priority: Optional[int] = None,
    queue_type: Optional[str] = None,
    queue_mode: Optional[str] = None,
    queue_master_locator: Optional[str] = None,
    **extra: Any,
) -> ArgumentTable:
    """
    Build the ``x-`` arguments for a queue declaration.

    TTL and expiry values are milliseconds. Unknown keyword arguments are passed
    through unchanged so newer broker arguments can be used without a release.

    :raises InvalidArgument: for negative sizes or unknown enumerated values
    """
    if max_priority is not None and not (
        isinstance(max_priority, int) and 1 <= max_priority <= 255
    ):
        raise InvalidArgument(f"max_priority must be between 1 and 255, got {max_priority!r}")

    arguments = {
        "x-message-ttl": _non_negative("message_ttl", message_ttl),
        "x-expires": _non_negative("expires", expires),
        "x-max-length": _non_negative("max_length", max_length),
        "x-max-length-bytes": _non_negative("max_length_bytes", max_length_bytes),
        "x-overflow": _one_of("overflow", overflow, OVERFLOW_BEHAVIOURS),
        "x-dead-letter-exchange": dead_letter_exchange,
        "x-dead-letter-routing-key": dead_letter_routing_key,
        "x-max-priority": max_priority,
        "x-queue-type": _one_of("queue_type", queue_type, QUEUE_TYPES),
        "x-queue-mode": _one_of("queue_mode", queue_mode, QUEUE_MODES),
        "x-queue-master-locator": _one_of(
            "queue_master_locator", queue_master_locator, MASTER_LOCATORS
        ),
    }
    arguments.update(extra)
    return ArgumentTable(arguments)


def exchange_arguments(
    alternate_exchange: Optional[str] = None, **extra: Any
) -> ArgumentTable:
    """Build the arguments for an exchange declaration."""
    arguments = {"alternate-exchange": alternate_exchange}
    arguments.update(extra)
    return ArgumentTable(arguments)
