"""
Structured logging with automatic run context propagation.

Architecture:
    ExecutionScheduler.run_group() → sets run_id and group_id once
        ↓ (automatic propagation via ContextVar)
    _trigger_node() task → adds node_id to its own copy of the context
        ↓ (child tasks inherit a copy when spawned)
    logger.info("message") → gets ALL context automatically
"""

import json
import logging
import os
import re
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any

# Each asyncio task gets a copy of the context at creation time, so node_id
# set inside one trigger task never leaks into its siblings.
trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")

_EXTRA_FIELDS = ("event", "node_id", "model", "latency_ms")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Produces machine-parseable log entries with:
    - Standard fields (timestamp, level, logger, message)
    - Run context (run_id, group_id, node_id)
    - Custom fields from the ``extra`` dict
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            log_entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Colorized level plus a short run/node prefix for correlation.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        prefix_parts = []
        if context.get("run_id"):
            prefix_parts.append(f"run:{context['run_id'][:8]}")
        if context.get("group_id"):
            prefix_parts.append(f"group:{context['group_id']}")
        if context.get("node_id"):
            prefix_parts.append(f"node:{context['node_id']}")

        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the application.

    Call ONCE at startup (CLI entry point, embedding application, or a
    test fixture).

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production, else human)
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    if format == "json":
        formatter: logging.Formatter = StructuredFormatter()
        os.environ["NO_COLOR"] = "1"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # httpx logs every request at INFO; route it through our formatter
    if format == "json":
        for logger_name in ("httpcore", "httpx"):
            third_party = logging.getLogger(logger_name)
            third_party.handlers.clear()
            third_party.propagate = True


def set_trace_context(**kwargs: Any) -> Token:
    """
    Merge fields into the trace context of the current execution context.

    Called by the scheduler at run start (run_id, group_id) and inside each
    node task (node_id). Returns a token for reset_trace_context().
    """
    current = trace_context.get() or {}
    return trace_context.set({**current, **kwargs})


def reset_trace_context(token: Token) -> None:
    """Restore the trace context that was active before set_trace_context()."""
    trace_context.reset(token)


def get_trace_context() -> dict:
    """Return a copy of the current trace context (empty dict if unset)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Clear trace context, e.g. between test runs."""
    trace_context.set(None)
