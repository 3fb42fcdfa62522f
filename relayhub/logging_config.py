"""structlog setup shared by the hub and the client."""

import logging
import sys
from typing import Any, Optional

import structlog

from .config import LOG_FORMAT, LOG_LEVEL

_configured = False
_handler: Optional[logging.Handler] = None


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None, force: bool = False) -> None:
    """Route structlog and stdlib logging (uvicorn included) through one renderer.

    Safe to call more than once; later calls are ignored unless ``force`` is set.
    """
    global _configured, _handler
    if _configured and not force:
        return

    level_name = (level or LOG_LEVEL).upper()
    renderer: Any
    if (fmt or LOG_FORMAT) == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=shared_processors
        + [
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    root.addHandler(handler)
    _handler = handler
    root.setLevel(level_name)

    # uvicorn installs its own handlers; let records propagate to ours instead
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True

    _configured = True


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)
