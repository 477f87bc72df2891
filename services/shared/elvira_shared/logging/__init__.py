"""Structured logging module."""

from .config import (
    bind_context,
    configure_logging,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    unbind_context,
)

__all__ = [
    "bind_context",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "set_correlation_id",
    "unbind_context",
]
