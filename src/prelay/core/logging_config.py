"""Central logging configuration utilities.

`configure_logging` is called once from the composition root. It routes
DEBUG/INFO to stdout and WARNING+ to stderr, stamps every record with the
current correlation id and renders relay log lines as columns.

Relay messages start with a `[component:action]` tag (`[poll:tick]`,
`[push:reconnect]`, `[webhook:attempt]`). `RelayFormatter` lifts that tag
into `%(component)s` and exposes the remaining text as `%(body)s`; records
from other libraries show their logger name in the component column.

The correlation id is a contextvar. It carries the request id inside HTTP
requests, the job id inside poll ticks and the delivery id inside webhook
attempts. Uvicorn keeps this setup because `main` passes `log_config=None`.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Optional
import contextvars

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default="-"
)

DEFAULT_FORMAT = (
    "%(asctime)s %(levelname)-7s %(component)-20s %(correlation_id)s | %(body)s"
)

_TAG = re.compile(r"^\[(?P<tag>[\w-]+:[\w-]+)\]\s*")


def _coerce_level(level: int | str | None) -> int:
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    return logging.getLevelNamesMapping().get(str(level).upper().strip(), logging.INFO)


class RelayFormatter(logging.Formatter):
    """Formatter providing `%(component)s` and `%(body)s` for tagged messages.

    The record's own message is left untouched so other handlers (pytest's
    capture, for one) still see the full tagged text.
    """

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        match = _TAG.match(message)
        if match:
            record.component = match.group("tag")
            record.body = message[match.end():]
        else:
            record.component = record.name
            record.body = message
        if not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id_var.get()
        return super().format(record)


class CorrelationIdFilter(logging.Filter):
    """Stamp the current correlation id on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        return True


class _LevelRangeFilter(logging.Filter):
    def __init__(self, min_level: int = logging.NOTSET, max_level: int = logging.CRITICAL):
        super().__init__()
        self.min_level = min_level
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return self.min_level <= record.levelno <= self.max_level


def _sink(stream, level_filter: logging.Filter, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.StreamHandler(stream=stream)
    handler.addFilter(level_filter)
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    level: int | str | None = None,
    fmt: Optional[str] = None,
    disable_uvicorn_access: bool = False,
) -> None:
    """Install the stdout/stderr sinks on the root logger, replacing any present."""
    numeric_level = _coerce_level(level)
    formatter = RelayFormatter(fmt or DEFAULT_FORMAT)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    root.addHandler(_sink(sys.stdout, _LevelRangeFilter(max_level=logging.INFO), formatter))
    root.addHandler(_sink(sys.stderr, _LevelRangeFilter(min_level=logging.WARNING), formatter))

    if disable_uvicorn_access:
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logging.getLogger("prelay").debug(
        f"[logging:configure] level={logging.getLevelName(numeric_level)} "
        f"uvicorn_access={'off' if disable_uvicorn_access else 'on'}"
    )
