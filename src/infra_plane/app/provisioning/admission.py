"""Admission gate: bounded concurrency with a bounded FIFO wait queue.

Usage::

    gate = AdmissionGate(max_concurrent=1, max_queue=10, acquire_timeout=30)
    ticket = gate.reserve('s1')          # never blocks; BusyError if full
    async with gate.hold(ticket):        # waits <= acquire_timeout
        ...                              # slot released on any exit

Slots are handed directly to the oldest waiter on release, so admission is
strictly first-requested, first-served. All methods must be called from the
event loop that owns the gate.
"""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from ..observability import get_logger
from ..observability.metrics import ACTIVE_SLOTS, ADMISSION_REJECTIONS_TOTAL
from .errors import BusyError

logger = get_logger(__name__)

QUEUE_FULL_MESSAGE = 'Server queue is full. Please try again later.'
SLOT_TIMEOUT_MESSAGE = 'Server is too busy. Please try again later.'


@dataclass(eq=False)
class AdmissionTicket:
    """A reservation returned by ``AdmissionGate.reserve``.

    ``position`` is 0 when a slot was granted immediately, otherwise the
    number of callers that were ahead of this one when it was queued.
    """

    session_id: str
    position: int
    _waiter: asyncio.Future | None = field(default=None, repr=False)
    _holding: bool = field(default=False, repr=False)
    _closed: bool = field(default=False, repr=False)

    @property
    def queued(self) -> bool:
        return self.position > 0


@dataclass(frozen=True, slots=True)
class AdmissionStats:
    total_slots: int
    available_slots: int
    active_slots: int
    queued: int
    max_queue_size: int

    def to_dict(self) -> dict[str, int]:
        return {
            'totalExecutionSlots': self.total_slots,
            'availableSlots': self.available_slots,
            'activeSlots': self.active_slots,
            'queuedTasks': self.queued,
            'maxQueueSize': self.max_queue_size,
        }


class AdmissionGate:
    """Process-wide limiter for provisioning work."""

    def __init__(
        self,
        *,
        max_concurrent: int = 1,
        max_queue: int = 10,
        acquire_timeout: float = 30.0,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError('max_concurrent must be >= 1')
        if max_queue < 0:
            raise ValueError('max_queue must be >= 0')
        self.max_concurrent = max_concurrent
        self.max_queue = max_queue
        self.acquire_timeout = acquire_timeout
        self._active = 0
        self._waiters: deque[AdmissionTicket] = deque()

    # ── Reservation ──────────────────────────────────────────────────

    def reserve(self, session_id: str) -> AdmissionTicket:
        """Take a free slot or join the wait queue.

        Raises:
            BusyError: If no slot is free and the wait queue is full.
        """
        if self._active < self.max_concurrent and not self._waiters:
            self._active += 1
            ACTIVE_SLOTS.set(self._active)
            ticket = AdmissionTicket(session_id=session_id, position=0)
            ticket._holding = True
            logger.debug('admission_granted', session_id=session_id, active=self._active)
            return ticket

        if len(self._waiters) >= self.max_queue:
            logger.warning(
                'admission_rejected',
                session_id=session_id,
                queued=len(self._waiters),
                max_queue=self.max_queue,
            )
            ADMISSION_REJECTIONS_TOTAL.inc()
            raise BusyError(QUEUE_FULL_MESSAGE)

        loop = asyncio.get_running_loop()
        ticket = AdmissionTicket(
            session_id=session_id,
            position=len(self._waiters) + 1,
            _waiter=loop.create_future(),
        )
        self._waiters.append(ticket)
        logger.info(
            'admission_queued',
            session_id=session_id,
            position=ticket.position,
            max_queue=self.max_queue,
        )
        return ticket

    @asynccontextmanager
    async def hold(self, ticket: AdmissionTicket) -> AsyncIterator[AdmissionTicket]:
        """Wait (bounded) for the ticket's slot and release it on exit.

        Raises:
            BusyError: If the slot is not granted within ``acquire_timeout``.
        """
        await self._acquire(ticket)
        try:
            yield ticket
        finally:
            self._release(ticket)

    def cancel(self, ticket: AdmissionTicket) -> None:
        """Give up a reservation that will never be held."""
        if ticket._closed:
            return
        waiter = ticket._waiter
        granted = waiter is not None and waiter.done() and not waiter.cancelled()
        if ticket._holding or granted:
            self._release_slot(ticket)
            return
        self._abandon(ticket)

    # ── Internals ────────────────────────────────────────────────────

    async def _acquire(self, ticket: AdmissionTicket) -> None:
        if ticket._closed:
            raise BusyError(SLOT_TIMEOUT_MESSAGE)
        if ticket._holding:
            return
        waiter = ticket._waiter
        assert waiter is not None
        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout=self.acquire_timeout)
        except asyncio.TimeoutError:
            if waiter.done() and not waiter.cancelled():
                # Granted in the same tick the timeout fired.
                ticket._holding = True
                return
            self._abandon(ticket)
            logger.error(
                'admission_timeout',
                session_id=ticket.session_id,
                timeout=self.acquire_timeout,
            )
            raise BusyError(SLOT_TIMEOUT_MESSAGE) from None
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                self._release_slot(ticket)
            else:
                self._abandon(ticket)
            raise
        ticket._holding = True
        logger.debug('admission_granted', session_id=ticket.session_id, active=self._active)

    def _abandon(self, ticket: AdmissionTicket) -> None:
        ticket._closed = True
        try:
            self._waiters.remove(ticket)
        except ValueError:
            pass
        if ticket._waiter is not None and not ticket._waiter.done():
            ticket._waiter.cancel()

    def _release(self, ticket: AdmissionTicket) -> None:
        if ticket._closed:
            return
        self._release_slot(ticket)

    def _release_slot(self, ticket: AdmissionTicket) -> None:
        ticket._closed = True
        ticket._holding = False
        # Hand the slot straight to the oldest live waiter.
        while self._waiters:
            nxt = self._waiters.popleft()
            if nxt._waiter is not None and not nxt._waiter.done():
                nxt._waiter.set_result(None)
                logger.debug('admission_handoff', session_id=nxt.session_id)
                return
        self._active -= 1
        ACTIVE_SLOTS.set(self._active)
        logger.debug('admission_released', session_id=ticket.session_id, active=self._active)

    # ── Introspection ────────────────────────────────────────────────

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return len(self._waiters)

    def position_of(self, ticket: AdmissionTicket) -> int:
        """Current 1-based queue position, or 0 if not waiting."""
        for index, waiting in enumerate(self._waiters, start=1):
            if waiting is ticket:
                return index
        return 0

    def stats(self) -> AdmissionStats:
        return AdmissionStats(
            total_slots=self.max_concurrent,
            available_slots=self.max_concurrent - self._active,
            active_slots=self._active,
            queued=len(self._waiters),
            max_queue_size=self.max_queue,
        )
