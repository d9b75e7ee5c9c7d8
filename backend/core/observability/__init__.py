"""Observability for the NFC-e core: JSON logging, health routes, metrics.

Request-scoped identity (trace id, seller tax id) is bound once per request
and read back by the log formatter; the seller id is masked on output.
"""
import uuid
from typing import Optional

from . import health
from . import logging as logging_module
from . import metrics


def generate_trace_id() -> str:
    return uuid.uuid4().hex


def set_trace_id(trace_id: Optional[str] = None) -> str:
    """Bind ``trace_id`` (or a fresh one) to the current context and return it."""
    trace_id = (trace_id or "").strip() or generate_trace_id()
    logging_module.set_trace_id(trace_id)
    return trace_id


def set_seller_id(seller_id: Optional[str] = None) -> str:
    seller_id = seller_id or "unknown"
    logging_module.set_seller_id(seller_id)
    return seller_id


def bind_request_context(trace_id: Optional[str], seller_id: Optional[str] = None) -> str:
    """Reset the per-request log context; returns the effective trace id.

    The seller id is reset as well so a previous request's seller never leaks
    into the next one handled by the same task.
    """
    set_seller_id(seller_id)
    return set_trace_id(trace_id)


def init_observability(enable_metrics: bool = True) -> None:
    logging_module.init_logging()
    if enable_metrics:
        metrics.init_metrics()


__all__ = [
    "logging_module",
    "health",
    "metrics",
    "generate_trace_id",
    "set_trace_id",
    "set_seller_id",
    "bind_request_context",
    "init_observability",
]
