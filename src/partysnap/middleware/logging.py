"""structlog setup for the API and the arq worker.

Push tokens are credentials for a device: any event field that carries one
is shortened before rendering, whichever module logged it.
"""

import logging

import structlog

from partysnap.config import Settings

TOKEN_FIELDS = frozenset({"token", "device_token", "push_token", "first_token"})
TOKEN_PREFIX_LENGTH = 20

# Chatty client libraries: keep their request lines out of the service log.
QUIET_LOGGERS = ("httpx", "httpcore", "hpack", "google.auth", "urllib3")


def short_token(token: str) -> str:
    """Truncate a push token for log output."""
    return f"{token[:TOKEN_PREFIX_LENGTH]}..." if len(token) > TOKEN_PREFIX_LENGTH else token


def redact_tokens(
    _logger: structlog.types.WrappedLogger, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    for field in TOKEN_FIELDS & event_dict.keys():
        value = event_dict[field]
        if isinstance(value, str):
            event_dict[field] = short_token(value)
    return event_dict


def static_fields(**fields: str) -> structlog.types.Processor:
    """Processor stamping every event with fixed fields such as the service name."""

    def processor(
        _logger: structlog.types.WrappedLogger, _method: str, event_dict: structlog.types.EventDict
    ) -> structlog.types.EventDict:
        for key, value in fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return processor


def setup_logging(settings: Settings) -> None:
    """JSON in production, console rendering only when asked for outside it."""
    use_console = settings.log_format == "console" and settings.environment != "production"
    renderer: structlog.types.Processor = (
        structlog.dev.ConsoleRenderer() if use_console else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            static_fields(service="partysnap-notify", environment=settings.environment),
            redact_tokens,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
