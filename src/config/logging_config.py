"""Logging configuration.

Modules log through ``logging.getLogger(__name__)``; records are rendered by a
structlog ``ProcessorFormatter`` installed on the root handler, as JSON lines
or as console text.
"""

import logging
import logging.config

import structlog

# Applied to every stdlib record before rendering
_pre_chain = [
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def build_formatter(fmt: str = "json") -> structlog.stdlib.ProcessorFormatter:
    """Create the formatter for ``fmt`` ("json" or "text")."""
    if fmt == "json":
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=False)]

    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    )


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        fmt: Output format, "json" or "text"

    """
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structlog": {"()": build_formatter, "fmt": fmt},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "structlog",
                },
            },
            "root": {"level": level.upper(), "handlers": ["console"]},
        }
    )
