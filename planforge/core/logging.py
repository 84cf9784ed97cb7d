from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

# chatty per-request loggers; agent calls and webhooks would flood INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def configure_logging(level: str = "INFO", *, json_logs: bool = True) -> None:
    """Route structlog events through stdlib logging for the planner process."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def plan_log_context(plan_id: str, **extra: Any) -> Iterator[None]:
    """Attach ``plan_id`` to every event logged inside the block, agents included."""
    with structlog.contextvars.bound_contextvars(plan_id=plan_id, **extra):
        yield


def get_logger(*, name: str | None = None, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    if kwargs:
        return logger.bind(**kwargs)
    return logger


__all__ = ["configure_logging", "get_logger", "plan_log_context"]
