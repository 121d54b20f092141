"""Observability helpers for infra-plane.

Quick start::

    from infra_plane.app.observability import configure_logging, get_logger

    configure_logging()
    logger = get_logger(__name__)
"""

from .logging import (
    bind_job_context,
    configure_logging,
    get_logger,
    in_current_context,
    request_id_ctx,
)
from .metrics import metrics_text

__all__ = [
    "bind_job_context",
    "configure_logging",
    "get_logger",
    "in_current_context",
    "metrics_text",
    "request_id_ctx",
]
