"""Logging configuration using loguru.

Several relay processes (one host, any number of remotes) usually log to
the same terminal, so every line carries a ``relay`` label such as
``host:claude`` or ``remote:codex``.  Until the role is decided the label
is the provider id alone.

Stdlib logging (uvicorn, httpx, websockets and the provider adapters) is
intercepted and flows through the same sink.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[relay]: <14}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# Chatty on every health probe and control frame.
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "websockets")


class _InterceptHandler(logging.Handler):
    """Bridge stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", *, label: str = "relay") -> None:
    """Install the single stderr sink.  Call once at process startup."""
    level = level.upper()

    logger.remove()
    logger.configure(extra={"relay": label})
    logger.add(sys.stderr, level=level, format=_FORMAT)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging initialised (level={})", level)


def set_relay_label(role: str, agent_id: str | None = None) -> None:
    """Tag subsequent log lines with the role this process won."""
    label = f"{role}:{agent_id}" if agent_id else str(role)
    logger.configure(extra={"relay": label})
