"""
Structured logging for the batch engine with execution context support.

Every line carries the batch execution id and pipeline type of the task that
emitted it, so interleaved output from concurrent pipelines can be separated.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime

# Context variables propagated into every task spawned by a run
execution_id_ctx: ContextVar[str | None] = ContextVar("execution_id", default=None)
pipeline_ctx: ContextVar[str | None] = ContextVar("pipeline", default=None)

_loggers: dict[str, "StructuredLogger"] = {}

_RESERVED = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "getMessage",
        "exc_info",
        "exc_text",
        "stack_info",
        "message",
    }
)

_FORMATTED = _RESERVED | {"execution_id", "pipeline", "op", "ms", "duration_ms"}


class StructuredFormatter(logging.Formatter):
    """Single-line ``key=value`` formatter."""

    def format(self, record: logging.LogRecord) -> str:
        execution_id = getattr(record, "execution_id", None) or execution_id_ctx.get() or "-"
        pipeline = getattr(record, "pipeline", None) or pipeline_ctx.get() or "-"

        parts = record.name.split(".")
        mod = parts[-1] if parts else record.name
        op = getattr(record, "op", getattr(record, "funcName", "-"))

        duration = getattr(record, "ms", getattr(record, "duration_ms", None))
        ms_part = f" ms={duration:.1f}" if duration is not None else ""

        timestamp = datetime.now(UTC).isoformat()
        msg = record.getMessage()

        extra_fields = "".join(
            f" {key}={value}"
            for key, value in record.__dict__.items()
            if key not in _FORMATTED
        )

        line = (
            f"t={timestamp} level={record.levelname} exec={execution_id} "
            f'pipeline={pipeline} mod={mod} op={op}{ms_part} msg="{msg}"{extra_fields}'
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger:
    """Logger accepting structured fields as keyword arguments."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, exc_info: bool = False, **kwargs):
        extra = {k: v for k, v in kwargs.items() if k not in _RESERVED}
        extra.setdefault("execution_id", execution_id_ctx.get())
        extra.setdefault("pipeline", pipeline_ctx.get())
        self.logger.log(level, msg, extra=extra, exc_info=exc_info)

    def debug(self, msg: str, **kwargs):
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs):
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs):
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs):
        self._log(logging.ERROR, msg, **kwargs)

    def exception(self, msg: str, **kwargs):
        self._log(logging.ERROR, msg, exc_info=True, **kwargs)

    def timed(self, msg: str, duration_ms: float, **kwargs):
        """Log with timing information."""
        kwargs["ms"] = duration_ms
        self.info(msg, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for the given module."""
    if name not in _loggers:
        _loggers[name] = StructuredLogger(name)
    return _loggers[name]


def setup_logging(level: str = "INFO") -> None:
    """Install the structured formatter on the root logger.

    Lines go to stderr; stdout carries command output.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)


def get_execution_id() -> str | None:
    return execution_id_ctx.get()


@contextmanager
def log_context(execution_id: str | None = None, pipeline: str | None = None) -> Iterator[None]:
    """Bind execution id and pipeline type for the duration of the block.

    Tasks created inside the block copy the context, so fan-out calls inherit it.
    """
    tokens = []
    if execution_id is not None:
        tokens.append((execution_id_ctx, execution_id_ctx.set(execution_id)))
    if pipeline is not None:
        tokens.append((pipeline_ctx, pipeline_ctx.set(pipeline)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
