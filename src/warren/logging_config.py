"""
Logging setup for processes built on warren.

Every warren module logs through ``logging.getLogger(__name__)``, so all
records live under the ``warren`` logger, which carries a ``NullHandler`` and
stays silent until configured. ``configure_logging()`` attaches handlers to
that logger only and never touches the root logger, so an application keeps
full control over its own logging. It also sets the level of the
``amqpstorm`` logger, which reports heartbeats and connection chatter at INFO.
"""

import logging
import os
import sys
from typing import IO, Optional

from warren.config import LIBRARY_NAME

try:
    from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
    from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
    from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
    from opentelemetry.sdk.resources import Resource

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False

AMQPSTORM_LOGGER = "amqpstorm"

# handlers added by configure_logging(), replaced on every call
_installed: list[tuple[logging.Logger, logging.Handler]] = []


def configure_logging(
    level: int = logging.INFO,
    amqpstorm_level: int = logging.WARNING,
    service_name: Optional[str] = None,
    enable_console: bool = True,
    stream: Optional[IO[str]] = None,
    enable_otel: bool = False,
    otel_endpoint: Optional[str] = None,
    app_env: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the ``warren`` and ``amqpstorm`` loggers.

    Calling it again replaces the handlers installed by the previous call.
    Records handled here do not propagate to the root logger; with no handler
    enabled only the levels are set and propagation stays on.

    Args:
        level: Level of the ``warren`` logger (default: INFO)
        amqpstorm_level: Level of the ``amqpstorm`` logger (default: WARNING)
        service_name: Process name shown in console lines and OTEL resources
        enable_console: Whether to log to ``stream`` (default: True)
        stream: Console stream (default: stdout)
        enable_otel: Whether to export records over OTLP (needs the ``otel`` extra)
        otel_endpoint: OTEL collector endpoint (defaults to env var)
        app_env: Deployment environment recorded on OTEL resources

    Returns:
        The ``warren`` logger
    """
    library_logger = logging.getLogger(LIBRARY_NAME)
    amqpstorm_logger = logging.getLogger(AMQPSTORM_LOGGER)
    _remove_installed()

    handlers: list[logging.Handler] = []
    if enable_console:
        handlers.append(_console_handler(service_name, stream))
    if enable_otel:
        if OTEL_AVAILABLE:
            handlers.append(_otel_handler(service_name, app_env, otel_endpoint))
        else:
            library_logger.warning(
                "OTEL log export requested but opentelemetry is not installed"
            )

    for target in (library_logger, amqpstorm_logger):
        for handler in handlers:
            target.addHandler(handler)
            _installed.append((target, handler))
        target.propagate = not handlers

    library_logger.setLevel(level)
    amqpstorm_logger.setLevel(amqpstorm_level)
    return library_logger


def _remove_installed() -> None:
    while _installed:
        target, handler = _installed.pop()
        target.removeHandler(handler)
        handler.close()


def create_formatter(service_name: Optional[str] = None) -> logging.Formatter:
    """Formatter for console lines, prefixed with ``[service_name]`` when given."""
    service_prefix = f"[{service_name}] " if service_name else ""
    return logging.Formatter(
        f"%(asctime)s - {service_prefix}%(name)s - %(levelname)s - %(message)s"
    )


def _console_handler(
    service_name: Optional[str], stream: Optional[IO[str]]
) -> logging.Handler:
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(create_formatter(service_name))
    return handler


def _otel_handler(
    service_name: Optional[str],
    app_env: Optional[str],
    otel_endpoint: Optional[str],
) -> logging.Handler:
    resource_attrs = {
        "service.name": service_name or LIBRARY_NAME,
        "service.instance.id": os.uname().nodename,
        "telemetry.library": LIBRARY_NAME,
    }
    if app_env:
        resource_attrs["deployment.environment"] = app_env

    # kept local to the handler; the global OTEL provider belongs to the application
    logger_provider = LoggerProvider(resource=Resource.create(resource_attrs))
    endpoint = otel_endpoint or os.getenv("OTEL_EXPORTER_OTLP_LOGS_ENDPOINT")
    logger_provider.add_log_record_processor(
        BatchLogRecordProcessor(OTLPLogExporter(endpoint=endpoint, insecure=True))
    )
    return LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider)
