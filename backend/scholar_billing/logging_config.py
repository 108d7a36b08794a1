"""structlog configuration module."""

import logging
import sys

import structlog


def _add_service(service_name: str):
    def processor(_logger, _method_name, event_dict: dict) -> dict:
        event_dict.setdefault("service", service_name)
        return event_dict

    return processor


def setup_logging(
    debug: bool = False,
    level: str = "INFO",
    service_name: str = "scholar-billing",
) -> None:
    """
    Configure structlog and stdlib logging.

    Debug mode renders colored console lines; otherwise every entry is a JSON
    object so operators can filter webhook failures by event_id or email.

    Args:
        debug: If True, use ConsoleRenderer and force DEBUG level.
        level: Log level name used outside debug mode.
        service_name: Value bound to the `service` key of every entry.
    """
    log_level = logging.DEBUG if debug else logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, method, path
        structlog.stdlib.add_log_level,
        _add_service(service_name),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # uvicorn and the Stripe SDK log through stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
