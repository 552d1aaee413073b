"""Structured logging utilities.

The pipeline core only calls ``logging.getLogger(__name__)``; front-ends
(CLI, REST, MCP) call :func:`configure_logging` once. Log lines are
prefixed with the current job id, which the orchestrator keeps in a
context variable so that concurrent jobs stay distinguishable.

Usage:
    from sheetpipe.utils.logging import LogContext, configure_logging

    configure_logging("DEBUG")
    with LogContext(job_id="job-1", phase="reading"):
        logger.info("Reading input")
"""

import logging
import sys
import time
from contextvars import ContextVar, Token
from typing import Any

_job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)
_extra_context_var: ContextVar[dict[str, Any] | None] = ContextVar(
    "extra_context", default=None
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_job_id() -> str | None:
    return _job_id_var.get()


def get_extra_context() -> dict[str, Any]:
    ctx = _extra_context_var.get()
    return ctx if ctx is not None else {}


class StructuredLogFormatter(logging.Formatter):
    """Formatter that prefixes messages with job_id and extra context."""

    def format(self, record: logging.LogRecord) -> str:
        prefix_parts = []
        job_id = get_job_id()
        if job_id:
            prefix_parts.append(f"job_id={job_id}")
        for key, value in get_extra_context().items():
            prefix_parts.append(f"{key}={value}")

        if not prefix_parts:
            return super().format(record)

        original_msg = record.msg
        record.msg = f"[{' '.join(prefix_parts)}] {original_msg}"
        try:
            return super().format(record)
        finally:
            record.msg = original_msg


def configure_logging(level: str = "INFO", stream: Any = None) -> None:
    """
    Install a StructuredLogFormatter handler on the sheetpipe logger.

    Safe to call more than once; the handler is replaced, not duplicated.
    """
    logger = logging.getLogger("sheetpipe")
    for handler in list(logger.handlers):
        if getattr(handler, "_sheetpipe_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredLogFormatter(LOG_FORMAT))
    handler._sheetpipe_handler = True
    logger.addHandler(handler)
    logger.setLevel(level.upper())


class LogContext:
    """
    Context manager that sets the job id and extra key/values for log lines.

    Also measures elapsed time, available as ``elapsed_ms``.

    Example:
        with LogContext(job_id="abc", phase="writing") as ctx:
            ...
        print(ctx.elapsed_ms)
    """

    def __init__(self, job_id: str | None = None, **extra: Any) -> None:
        self.job_id = job_id
        self.extra = extra
        self._job_token: Token | None = None
        self._extra_token: Token | None = None
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "LogContext":
        if self.job_id is not None:
            self._job_token = _job_id_var.set(self.job_id)
        if self.extra:
            self._extra_token = _extra_context_var.set(
                {**get_extra_context(), **self.extra}
            )
        self._start = time.perf_counter()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000
        if self._extra_token is not None:
            _extra_context_var.reset(self._extra_token)
        if self._job_token is not None:
            _job_id_var.reset(self._job_token)
