"""
Shared logging configuration for the VAT filing pricing engine.
"""

import sys
import structlog
import logging
import uuid
import time
from typing import Any, Dict, Optional, TextIO
from contextvars import ContextVar

# Context variables for correlation IDs
calculation_id_var: ContextVar[Optional[str]] = ContextVar('calculation_id', default=None)
country_code_var: ContextVar[Optional[str]] = ContextVar('country_code', default=None)


def configure_logging(service_name: str, log_level: str = "info", stream: Optional[TextIO] = None) -> None:
    """Configure structured logging for a service."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_correlation_context,
            add_timestamp,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to log events."""
    # Logger names are "<service>.<component>"
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".")[0]

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add calculation correlation context to log events."""
    calculation_id = calculation_id_var.get()
    if calculation_id:
        event_dict["calculation_id"] = calculation_id

    country_code = country_code_var.get()
    if country_code:
        event_dict["country_code"] = country_code

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def set_calculation_id(calculation_id: Optional[str] = None) -> str:
    """Set calculation ID in context."""
    if calculation_id is None:
        calculation_id = str(uuid.uuid4())
    calculation_id_var.set(calculation_id)
    return calculation_id


def set_country_context(country_code: Optional[str]) -> None:
    """Set the country currently being evaluated."""
    country_code_var.set(country_code)


def clear_context():
    """Clear all context variables."""
    calculation_id_var.set(None)
    country_code_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
