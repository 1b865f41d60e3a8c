"""
Configuration for warren.

Connection, topology, consumer and RPC settings live in a single flat property
bag (``AmqpProperties``), grouped into named profiles (``Profiles``). Every call
made through the client merges its per-call overrides over the selected
profile; an override replaces the whole value of its key.
"""

from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from warren.exceptions import ConfigurationError

# Name used for logger configuration and telemetry resource attributes
LIBRARY_NAME = "warren"

DEFAULT_PROFILE = "production"


class AmqpProperties(BaseModel):
    """Connection, topology, consumer and RPC settings for one profile."""

    model_config = ConfigDict(frozen=True, extra="allow")

    # connection
    host: str = "localhost"
    port: int = 5672
    username: str = "guest"
    password: str = "guest"
    vhost: str = "/"
    connect_options: dict[str, Any] = Field(default_factory=dict)
    ssl_options: dict[str, Any] = Field(default_factory=dict)

    content_type: str = "application/json"

    # exchange
    exchange: str = "amq.topic"
    exchange_type: str = "topic"
    exchange_passive: bool = False
    exchange_durable: bool = True
    exchange_auto_delete: bool = False
    exchange_properties: Any = None

    # queue
    queue: str = ""
    queue_force_declare: bool = False
    queue_passive: bool = False
    queue_durable: bool = True
    queue_exclusive: bool = False
    queue_auto_delete: bool = False
    queue_properties: Any = None
    routing: Union[str, list[str]] = Field(default_factory=list)

    # consumer
    consumer_tag: str = ""
    consumer_no_local: bool = False
    consumer_no_ack: bool = False
    consumer_exclusive: bool = False
    consumer_properties: dict[str, Any] = Field(default_factory=dict)
    timeout: float = 0
    persistent: bool = False
    message_limit: int = 0
    poll_interval: float = 0.05
    shutdown_signal: Optional[str] = "quit"

    # qos
    qos: bool = False
    qos_prefetch_count: int = 1
    qos_prefetch_size: int = 0
    qos_a_global: bool = False

    # publisher
    publisher_confirms: bool = False
    publish_timeout: float = 30
    mandatory: bool = False
    application_headers: dict[str, Any] = Field(default_factory=dict)

    # rpc
    rpc_queue: str = "rpc-worker"
    rpc_poll_interval: float = 0.05

    def merged(self, overrides: Optional[Mapping[str, Any]] = None) -> "AmqpProperties":
        """
        Return a validated copy with ``overrides`` applied on top.

        :param overrides: per-call property values, replacing whole keys
        :raises ConfigurationError: if the merged values do not validate
        """
        if not overrides:
            return self
        data = self.model_dump()
        data.update(overrides)
        try:
            return AmqpProperties.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid AMQP properties: {e}") from e

    def get_connect_option(self, key: str, default: Any = None) -> Any:
        return self.connect_options.get(key, default)


class Profiles(BaseModel):
    """Named property profiles plus the name of the one in use."""

    model_config = ConfigDict(frozen=True)

    use: str = DEFAULT_PROFILE
    properties: dict[str, AmqpProperties] = Field(
        default_factory=lambda: {DEFAULT_PROFILE: AmqpProperties()}
    )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Profiles":
        """
        Build profiles from a mapping shaped like ``{"use": ..., "properties": {...}}``.

        :raises ConfigurationError: if the mapping does not validate
        """
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid AMQP configuration: {e}") from e

    def get(self, name: Optional[str] = None) -> AmqpProperties:
        """
        Get a profile by name, defaulting to the one selected by ``use``.

        :raises ConfigurationError: if no such profile exists
        """
        profile = name or self.use
        if profile not in self.properties:
            raise ConfigurationError(
                f"Unknown AMQP profile: {profile}. "
                f"Valid options are: {', '.join(sorted(self.properties))}"
            )
        return self.properties[profile]
