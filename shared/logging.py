"""
Shared logging configuration for the organizing dashboard worker.

Every event carries the emitting component ("cache", "refresh_scheduler",
...) and, when set, the request, user, cache type and refresh action it
belongs to.
"""

import sys
import structlog
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from contextvars import ContextVar

# Context variables for correlation
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
cache_type_var: ContextVar[Optional[str]] = ContextVar('cache_type', default=None)
refresh_action_var: ContextVar[Optional[str]] = ContextVar('refresh_action', default=None)


def configure_logging(service_name: str, log_level: str = "info", json_logs: bool = True) -> None:
    """Configure structured logging for a service."""
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_worker_context,
            add_correlation_context,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def add_worker_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Split "<service>.<component>" logger names into service and component."""
    logger_name = event_dict.get("logger", "")
    service, _, component = logger_name.partition(".")
    if component:
        event_dict.setdefault("service", service)
        event_dict.setdefault("component", component)

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request, user, cache and refresh correlation to log events."""
    # Explicit keyword fields on the event win over context.
    for key, var in (
        ("request_id", request_id_var),
        ("user_id", user_id_var),
        ("cache_type", cache_type_var),
        ("action", refresh_action_var),
    ):
        value = var.get()
        if value:
            event_dict.setdefault(key, value)

    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_user_context(user_id: Optional[str] = None):
    """Set the authenticated user for log correlation."""
    if user_id:
        user_id_var.set(user_id)


def set_cache_type(cache_type: Optional[str]):
    """Tag the rest of the request's events with the cache it reads."""
    cache_type_var.set(cache_type)


@contextmanager
def refresh_action_context(action: str) -> Iterator[None]:
    """Tag events logged while a refresh action runs."""
    token = refresh_action_var.set(action)
    try:
        yield
    finally:
        refresh_action_var.reset(token)


def clear_context():
    """Clear all context variables."""
    request_id_var.set(None)
    user_id_var.set(None)
    cache_type_var.set(None)
    refresh_action_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
