import logging

import structlog

from backoffice.core.config import settings

# Third-party loggers that drown out request logs at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "urllib3")


def add_environment(logger, method_name, event_dict):
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def configure_logging():
    """Route structlog through stdlib logging; JSON lines unless DEBUG."""
    level = logging.DEBUG if settings.DEBUG else logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_environment,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.DEBUG:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
