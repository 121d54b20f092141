"""Structured logging for infra-plane.

Every event is a snake_case name plus key/value context. Two kinds of
context are merged in automatically:

- the HTTP request id, set by ``RequestIdMiddleware``;
- the job identity (``session_id`` and ``operation``), bound with
  ``bind_job_context`` when the engine starts an apply, destroy or rollback.

Job context lives in ``contextvars``. Tasks created inside the binding inherit
it, but executor threads do not, so blocking work is submitted through
``in_current_context``.

Usage::

    from infra_plane.app.observability.logging import bind_job_context, get_logger

    logger = get_logger(__name__)
    with bind_job_context("s1", "apply"):
        task = loop.create_task(run())  # events from run() carry session_id/operation
"""

from __future__ import annotations

import contextvars
import functools
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Iterator, TypeVar

import structlog

T = TypeVar("T")

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

_configured = False


def _add_request_id(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    rid = request_id_ctx.get()
    if rid is not None:
        event_dict["request_id"] = rid
    return event_dict


@contextmanager
def bind_job_context(session_id: str, operation: str) -> Iterator[None]:
    """Tag every event logged inside the block with the job it belongs to.

    Explicit ``session_id=`` keywords on a log call still win over the bound
    value.
    """
    with structlog.contextvars.bound_contextvars(
        session_id=session_id, operation=operation
    ):
        yield


def in_current_context(fn: Callable[..., T], *args: Any) -> Callable[[], T]:
    """Wrap ``fn(*args)`` so it runs under a copy of the caller's context.

    ``loop.run_in_executor`` does not carry contextvars into the worker
    thread; without this, job context is lost for every blocking step.
    """
    return functools.partial(contextvars.copy_context().run, fn, *args)


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
) -> None:
    """Configure structlog and stdlib logging once per process.

    Args:
        level: Log level name. Defaults to ``LOG_LEVEL`` or INFO.
        json_output: JSON lines when True, console rendering when False.
            Defaults to ``LOG_FORMAT == "json"``.
    """
    global _configured
    if _configured:
        return
    _configured = True

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "json") == "json"

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        _add_request_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # uvicorn and asyncio log through stdlib; give their records the same context.
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
