"""Structured logging for record stores.

Every module logs through ``logging.getLogger(__name__)``; ``configure_logging``
installs a structlog ``ProcessorFormatter`` on the root logger so those records
come out as colored console lines (``text``) or JSON lines (``json``).

Each record carries the active store name and the current OTel trace and span
ids. With ``log_root`` set, a JSON copy goes to
``{log_root}/recordstore/{store_name}.log``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_store_context: ContextVar[str | None] = ContextVar("store_name", default=None)

# asyncpg logs every pool reconnect at INFO
_NOISE_LOGGERS = ("asyncpg",)

_LOG_SUBDIR = "recordstore"
_CONSOLE_TIME_FORMAT = "%H:%M:%S"
_NO_TRACE_ID = "0" * 32
_NO_SPAN_ID = "0" * 16


def set_store_context(name: str) -> None:
    _store_context.set(name)


def get_store_context() -> str | None:
    return _store_context.get()


@contextmanager
def store_context(name: str) -> Iterator[None]:
    """Tag log records emitted inside the block with store *name*."""
    token = _store_context.set(name)
    try:
        yield
    finally:
        _store_context.reset(token)


def add_store_context(logger, method_name, event_dict: dict) -> dict:  # noqa: ARG001
    """structlog processor: add ``store`` from the current context."""
    event_dict["store"] = _store_context.get()
    return event_dict


def add_otel_context(logger, method_name, event_dict: dict) -> dict:  # noqa: ARG001
    """structlog processor: add ``trace_id``/``span_id``, zeroed outside a span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = _NO_TRACE_ID
        event_dict["span_id"] = _NO_SPAN_ID
    return event_dict


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_store_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(renderer: structlog.types.Processor, time_fmt: str) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_pre_chain(time_fmt),
    )


def _parse_level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


def store_log_path(log_root: Path | str, store_name: str | None) -> Path:
    """Where the JSON log file for *store_name* lives under *log_root*."""
    return Path(log_root) / _LOG_SUBDIR / f"{store_name or _LOG_SUBDIR}.log"


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    store_name: str | None = None,
) -> None:
    """Route stdlib and structlog output through structlog renderers.

    Safe to call repeatedly: existing root handlers are replaced.

    Parameters
    ----------
    level:
        Root log level name; unknown names fall back to ``INFO``.
    fmt:
        ``"json"`` for JSON lines, anything else for colored console output.
    log_root:
        Also write JSON lines to :func:`store_log_path` under this directory.
    store_name:
        Stored in the context and used to name the log file.
    """
    if store_name:
        set_store_context(store_name)

    if fmt == "json":
        time_fmt = "iso"
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        time_fmt = _CONSOLE_TIME_FORMAT
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, time_fmt))

    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers = [console]
    root.setLevel(_parse_level(level))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        path = store_log_path(log_root, store_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
        root.addHandler(file_handler)

    # Direct structlog.get_logger() callers share the console pre-chain
    structlog.configure(
        processors=[
            *_pre_chain(time_fmt),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
