"""
Logging configuration using structlog for structured, JSON-based logging.

This module provides centralized logging setup for the control plane,
with support for contextual logging (run ids, request ids) and structured
output suitable for audit pipelines.
"""

import sys

import structlog


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging with JSON output on stderr.

    Stdout is left to command output (JSON documents, run views).

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_run_context(run_id: str, playbook_id: str | None = None) -> None:
    """Bind run identifiers to every log line emitted in this context.

    Args:
        run_id: Run being executed
        playbook_id: Playbook the run belongs to
    """
    structlog.contextvars.bind_contextvars(run_id=run_id, playbook_id=playbook_id)


def clear_run_context() -> None:
    """Drop identifiers bound by ``bind_run_context``."""
    structlog.contextvars.unbind_contextvars("run_id", "playbook_id")
