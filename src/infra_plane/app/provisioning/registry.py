"""In-memory session registry.

The registry is the single source of truth for job contexts while the
process is alive. It is injected into the engine (never a module global)
and is safe to use from the event loop and from worker threads.
"""

from __future__ import annotations

import threading
from typing import Callable, Iterator

from .job_context import JobContext


class SessionRegistry:
    """Thread-safe mapping of session id -> ``JobContext``."""

    def __init__(self) -> None:
        self._contexts: dict[str, JobContext] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> JobContext | None:
        with self._lock:
            return self._contexts.get(session_id)

    def get_or_create(
        self,
        session_id: str,
        factory: Callable[[], JobContext],
    ) -> JobContext:
        """Return the existing context or insert the one built by ``factory``."""
        with self._lock:
            context = self._contexts.get(session_id)
            if context is None:
                context = factory()
                self._contexts[session_id] = context
            return context

    def put(self, context: JobContext) -> None:
        with self._lock:
            self._contexts[context.session_id] = context

    def remove(self, session_id: str, *, expected: JobContext | None = None) -> JobContext | None:
        """Remove a session.

        When ``expected`` is given, the entry is only removed if it is still
        that exact context.
        """
        with self._lock:
            current = self._contexts.get(session_id)
            if current is None:
                return None
            if expected is not None and current is not expected:
                return None
            return self._contexts.pop(session_id)

    def list(self) -> list[JobContext]:
        with self._lock:
            return list(self._contexts.values())

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._contexts

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    def __iter__(self) -> Iterator[JobContext]:
        return iter(self.list())
