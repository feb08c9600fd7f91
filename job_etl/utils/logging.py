"""
Logging for the job ETL pipeline.

Console output goes through rich; an optional log file receives one JSON
object per line. Records carry the current run context (run id, batch
number, ...) set with ``LogContext``.
"""

import contextvars
import functools
import inspect
import json
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from rich.console import Console
from rich.logging import RichHandler

# Attributes every LogRecord has; anything else was passed via ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "context_prefix",
}

_QUIET_LOGGERS = ("httpx", "httpcore", "openai")

_run_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("run_context", default={})


def current_context() -> Dict[str, Any]:
    """Context values visible to the running task."""
    return dict(_run_context.get())


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with run context and ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, value) for key, value in record.__dict__.items() if key not in _RECORD_ATTRS
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ContextFilter(logging.Filter):
    """Copy the current run context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _run_context.get()
        for key, value in context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        record.context_prefix = _prefix(context)
        return True


def _prefix(context: Dict[str, Any]) -> str:
    parts = []
    if "run_id" in context:
        parts.append(f"run={context['run_id']}")
    if "batch" in context:
        parts.append(f"batch={context['batch']}")
    return f"[{' '.join(parts)}] " if parts else ""


# Shared by every handler setup_logging installs
context_filter = ContextFilter()


def setup_logging(
    log_level: Optional[str] = None,
    log_file_path: Optional[Path] = None,
    use_structured_logging: bool = True,
    dev_mode: bool = False,
) -> None:
    """
    Configure root logging.

    Args:
        log_level: Level name, INFO when omitted
        log_file_path: Also write records to this file
        use_structured_logging: JSON lines in the log file instead of plain text
        dev_mode: Include locals in rich tracebacks
    """
    level = (log_level or "INFO").upper()

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if isinstance(handler, (RichHandler, logging.FileHandler)):
            handler.close()

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_show_locals=dev_mode,
    )
    console_handler.addFilter(context_filter)
    console_handler.setFormatter(logging.Formatter("%(context_prefix)s%(message)s"))
    root.addHandler(console_handler)

    if log_file_path:
        path = Path(log_file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.addFilter(context_filter)
        file_handler.setFormatter(
            StructuredFormatter()
            if use_structured_logging
            else logging.Formatter("%(asctime)s %(levelname)-8s %(name)s %(context_prefix)s%(message)s")
        )
        root.addHandler(file_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        "Logging configured",
        extra={"log_level": level, "log_file": str(log_file_path) if log_file_path else None},
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """
    Attach values to every record logged inside the block.

    Context is per task, so concurrent batches never see each other's
    values. Nested blocks override and then restore outer values.

    Example:
        with LogContext(run_id="a1b2c3d4", batch=3):
            logger.info("Batch started")
    """

    def __init__(self, **values: Any) -> None:
        self.values = values
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "LogContext":
        self._token = _run_context.set({**_run_context.get(), **self.values})
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._token is not None:
            _run_context.reset(self._token)
            self._token = None


@contextmanager
def _timed(func_name: str, logger: logging.Logger) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    except Exception as e:
        logger.error(
            f"{func_name} failed after {time.perf_counter() - start:.2f}s",
            extra={"duration_seconds": time.perf_counter() - start, "error": str(e)},
        )
        raise
    duration = time.perf_counter() - start
    logger.info(f"{func_name} finished in {duration:.2f}s", extra={"duration_seconds": duration})


def log_performance(func):
    """Log how long ``func`` takes; works on plain and async callables."""
    logger = get_logger(func.__module__)

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with _timed(func.__qualname__, logger):
                return await func(*args, **kwargs)

        return async_wrapper

    @functools.wraps(func)
    def sync_wrapper(*args, **kwargs):
        with _timed(func.__qualname__, logger):
            return func(*args, **kwargs)

    return sync_wrapper
