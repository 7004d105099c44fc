"""
Structured logging setup for the community jobs and workflow services.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_service_context,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _add_service_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag entries with the process role so worker and API logs can be split."""
    event_dict.setdefault("service", "nyuchi-platform")
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


# Convenience functions for common log patterns
def log_job_outcome(job_type: str, outcome: str, duration_ms: float, error: str = None, **extra):
    """Log a processed queue message with consistent fields."""
    logger = get_logger("jobs")

    log_data = {
        "job_type": job_type,
        "outcome": outcome,
        "duration_ms": duration_ms,
        **extra,
    }

    if error:
        log_data["error"] = error
        logger.warning("Job attempt failed", **log_data)
    else:
        logger.info("Job handled", **log_data)


def log_workflow_transition(
    instance_id: str, workflow_name: str, from_status: str, to_status: str, **extra
):
    """Log a workflow instance status change."""
    logger = get_logger("workflows")

    logger.info(
        "Workflow status changed",
        instance_id=instance_id,
        workflow=workflow_name,
        from_status=from_status,
        to_status=to_status,
        **extra,
    )
