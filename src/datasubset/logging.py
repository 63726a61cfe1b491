"""
Structured logging for datasubset.

Exported data goes to stdout, so every log record is written to stderr.
Records carry keyword context (table names, row counts, timings) which is
rendered either as ``key=value`` pairs or as a JSON object.

Usage:
    logger = get_logger(__name__)
    logger.info("Tables discovered", table_count=12)
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER_NAME = "datasubset"

QUERY_PREVIEW_LENGTH = 200


def _record_context(record: logging.LogRecord) -> dict[str, Any]:
    return getattr(record, "context", None) or {}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, message, context, exception."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = _record_context(record)
        if context:
            log_data["context"] = context
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``[TIMESTAMP] LEVEL: message (key=value, ...)`` followed by any traceback."""

    def __init__(self) -> None:
        super().__init__("[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S")

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        context = _record_context(record)
        if context:
            line += " (" + ", ".join(f"{key}={value}" for key, value in context.items()) + ")"
        return line


def setup_logging(
    verbose: bool = False,
    quiet: bool = False,
    structured: bool = False,
) -> None:
    """
    Install the stderr handler of the ``datasubset`` logger.

    Calling it again replaces the previous handler.

    Args:
        verbose: Enable DEBUG level logging
        quiet: Only report warnings and errors
        structured: Use JSON structured format (default: human-readable)
    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if structured else HumanReadableFormatter())

    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(logging.DEBUG)  # the handler does the filtering
    package_logger.handlers.clear()
    package_logger.addHandler(handler)
    package_logger.propagate = False


def get_logger(name: str) -> "ContextLogger":
    """
    Context logger for a module, placed under the ``datasubset`` logger.

    Args:
        name: Logger name (typically __name__ of calling module)
    """
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return ContextLogger(logging.getLogger(name))


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter whose methods take keyword context.

    The adapter's own context (see ``with_context``) is merged with the
    keywords of each call and stored on the record as ``context``.

    Example:
        logger.debug("Fetched rows", table="public.users", row_count=3)
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        super().__init__(logger, context or {})

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        context = {**(self.extra or {}), **kwargs.pop("context", {})}
        if context:
            kwargs["extra"] = {"context": context}
        return msg, kwargs

    def _log_with_context(
        self, level: int, msg: str, context: dict[str, Any], exc_info: Any = None
    ) -> None:
        if not self.isEnabledFor(level):
            return
        msg, kwargs = self.process(msg, {"context": context, "exc_info": exc_info})
        self.logger.log(level, msg, **kwargs)

    def debug(self, msg: str, **context) -> None:  # type: ignore[override]
        self._log_with_context(logging.DEBUG, msg, context)

    def info(self, msg: str, **context) -> None:  # type: ignore[override]
        self._log_with_context(logging.INFO, msg, context)

    def warning(self, msg: str, **context) -> None:  # type: ignore[override]
        self._log_with_context(logging.WARNING, msg, context)

    def error(self, msg: str, exc_info: Any = None, **context) -> None:  # type: ignore[override]
        self._log_with_context(logging.ERROR, msg, context, exc_info)

    def critical(  # type: ignore[override]
        self, msg: str, exc_info: Any = None, **context
    ) -> None:
        self._log_with_context(logging.CRITICAL, msg, context, exc_info)

    def with_context(self, **context) -> "ContextLogger":
        """
        Logger that adds ``context`` to every record.

        Example:
            root_logger = logger.with_context(table="public.orders")
            root_logger.info("Export root has no filter")
        """
        return ContextLogger(self.logger, {**(self.extra or {}), **context})

    @contextmanager
    def timed_operation(self, operation: str, **context):
        """
        Log the start, end and duration of an operation.

        Example:
            with logger.timed_operation("dependency_graph_build", schemas=["public"]):
                graph = builder.build_dependency_graph(["public"])
        """
        start = time.perf_counter()
        self.debug(f"Starting {operation}", **context)
        try:
            yield
        except Exception as e:
            duration_ms = int((time.perf_counter() - start) * 1000)
            self.error(
                f"Failed {operation}",
                exc_info=True,
                duration_ms=duration_ms,
                error=str(e),
                **context,
            )
            raise
        duration_ms = int((time.perf_counter() - start) * 1000)
        self.info(f"Completed {operation}", duration_ms=duration_ms, **context)


def log_query_execution(
    logger: ContextLogger, query: str, params: tuple, row_count: int | None = None
):
    """Log an executed SELECT with a shortened query text."""
    if len(query) > QUERY_PREVIEW_LENGTH:
        query = query[:QUERY_PREVIEW_LENGTH] + "..."
    context: dict[str, Any] = {"query_preview": query, "param_count": len(params or ())}
    if row_count is not None:
        context["row_count"] = row_count
    logger.debug("Executing query", **context)


def log_export_complete(logger: ContextLogger, item_count: int, row_count: int, duration_ms: int):
    """Log export completion with statistics."""
    logger.info(
        "Export complete",
        item_count=item_count,
        row_count=row_count,
        duration_ms=duration_ms,
    )
