"""
RabbitMQ connection management.

``ConnectionManager`` owns exactly one broker connection and one channel on it.
It never reconnects in the background; callers decide the retry policy (see
``warren.rabbitmq.rpc.RpcServer`` for a bounded backoff loop).
"""

import logging
import ssl
import threading
from typing import Any, Optional

from amqpstorm import AMQPConnectionError, AMQPError, Channel, Connection

from warren.config import AmqpProperties
from warren.exceptions import ConnectionError, ResourceUnavailable

from .base import ChannelProvider

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT = 60
DEFAULT_CONNECTION_TIMEOUT = 10


def build_ssl_options(
    hostname: str,
    cafile: Optional[str] = None,
    certfile: Optional[str] = None,
    keyfile: Optional[str] = None,
    verify_peer: bool = True,
) -> dict:
    """
    Create SSL options with a hardened client context.

    A new context is built on every call; amqpstorm must never be handed a
    context that already served a previous connection.

    :param hostname: server name used for SNI and certificate checks
    :param cafile: CA bundle; the system defaults are used when omitted
    :param certfile: client certificate for mutual TLS
    :param keyfile: key for ``certfile``
    :param verify_peer: disable to skip certificate and hostname checks
    """
    if hostname is None or len(hostname) == 0:
        raise ValueError("SSL is enabled but no hostname provided")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    if cafile:
        context.load_verify_locations(cafile=cafile)
    else:
        context.load_default_certs(purpose=ssl.Purpose.SERVER_AUTH)

    # TLS 1.2+ only, restricted to AEAD suites
    context.options |= ssl.OP_NO_SSLv2
    context.options |= ssl.OP_NO_SSLv3
    context.options |= ssl.OP_NO_TLSv1
    context.options |= ssl.OP_NO_TLSv1_1
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.set_ciphers(
        "ECDHE+AESGCM:ECDHE+CHACHA20:DHE+AESGCM:DHE+CHACHA20:!aNULL:!MD5:!DSS"
    )

    if verify_peer:
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
    else:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    if certfile:
        context.load_cert_chain(certfile=certfile, keyfile=keyfile)

    logger.debug("Created SSL context for hostname: %s", hostname)
    return {
        "context": context,
        "server_hostname": hostname,
    }


class ConnectionManager(ChannelProvider):
    """
    One connection plus one channel, opened on demand.

    ``connect()`` is idempotent while connected and replaces a dead connection
    and its channel otherwise. ``get_channel()``/``get_connection()`` never
    connect implicitly.
    """

    def __init__(self, properties: Optional[AmqpProperties] = None) -> None:
        self._properties = properties or AmqpProperties()
        self._connection: Optional[Connection] = None
        self._channel: Optional[Channel] = None
        self._lock = threading.RLock()

    @property
    def properties(self) -> AmqpProperties:
        return self._properties

    def _connection_params(self) -> dict[str, Any]:
        props = self._properties
        params = {
            "hostname": props.host,
            "port": props.port,
            "username": props.username,
            "password": props.password,
            "virtual_host": props.vhost,
            "heartbeat": props.get_connect_option("heartbeat", DEFAULT_HEARTBEAT),
            "timeout": props.get_connect_option(
                "connection_timeout", DEFAULT_CONNECTION_TIMEOUT
            ),
        }

        ssl_enabled = props.get_connect_option("ssl", bool(props.ssl_options))
        if ssl_enabled:
            ssl_options = dict(props.ssl_options)
            params["ssl"] = True
            params["ssl_options"] = build_ssl_options(
                hostname=ssl_options.get("server_hostname") or props.host,
                cafile=ssl_options.get("cafile"),
                certfile=ssl_options.get("certfile"),
                keyfile=ssl_options.get("keyfile"),
                verify_peer=ssl_options.get("verify_peer", True),
            )
        return params

    def connect(self) -> Channel:
        """
        Open the connection and its channel.

        :return: the live channel
        :raises ConnectionError: on network or authentication failure
        """
        with self._lock:
            if self.is_connected():
                return self._channel

            if self._connection is not None or self._channel is not None:
                logger.warning("Replacing stale RabbitMQ connection")
                self.disconnect()

            params = self._connection_params()
            logger.info(
                "Establishing RabbitMQ connection to %s:%s vhost=%s heartbeat=%s SSL=%s",
                params["hostname"],
                params["port"],
                params["virtual_host"],
                params["heartbeat"],
                params.get("ssl", False),
            )
            try:
                connection = Connection(**params)
            except AMQPConnectionError as e:
                raise ConnectionError(
                    self._properties.host,
                    self._properties.port,
                    f"Unable to connect to broker at "
                    f"{self._properties.host}:{self._properties.port}: {e}",
                ) from e

            try:
                channel = connection.channel()
            except AMQPError as e:
                self._close_quietly(connection, "connection")
                raise ConnectionError(
                    self._properties.host,
                    self._properties.port,
                    f"Connected to {self._properties.host}:{self._properties.port} "
                    f"but could not open a channel: {e}",
                ) from e

            self._connection = connection
            self._channel = channel
            logger.info("RabbitMQ connection established successfully")
            return channel

    def reconnect(self) -> Channel:
        with self._lock:
            self.disconnect()
            return self.connect()

    def get_channel(self) -> Channel:
        """
        :raises ResourceUnavailable: if ``connect()`` has not been called
        """
        if self._channel is None:
            raise ResourceUnavailable("No channel available; call connect() first")
        return self._channel

    def get_connection(self) -> Connection:
        """
        :raises ResourceUnavailable: if ``connect()`` has not been called
        """
        if self._connection is None:
            raise ResourceUnavailable("No connection available; call connect() first")
        return self._connection

    def is_connected(self) -> bool:
        """
        Check if the connection and channel are currently healthy.

        :return: True if both are open and report no errors
        """
        with self._lock:
            if self._connection is None or self._channel is None:
                return False
            if not self._connection.is_open or not self._channel.is_open:
                return False
            try:
                self._connection.check_for_errors()
            except AMQPError as e:
                logger.warning("Connection health check failed: %s", e)
                return False
            return True

    def disconnect(self) -> None:
        """Close the channel, then the connection. Safe to call repeatedly."""
        with self._lock:
            channel, self._channel = self._channel, None
            connection, self._connection = self._connection, None

        if channel is None and connection is None:
            return

        logger.info("Closing RabbitMQ connection")
        if channel is not None:
            self._close_quietly(channel, "channel")
        if connection is not None:
            self._close_quietly(connection, "connection")

    @staticmethod
    def _close_quietly(resource: Any, name: str) -> None:
        try:
            if resource.is_open:
                resource.close()
                logger.debug("%s closed", name.capitalize())
        except Exception as e:
            logger.warning("Error closing %s: %s", name, e)

    def __enter__(self) -> "ConnectionManager":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.disconnect()
