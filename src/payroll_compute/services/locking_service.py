"""Per-run identity locks for status-changing operations."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from payroll_compute.database import acquire_advisory_lock, release_advisory_lock
from payroll_compute.errors import BusinessRuleViolation

logger = logging.getLogger(__name__)


class RunLockedError(BusinessRuleViolation):
    """Raised when another process holds the run's advisory lock."""

    code = "RUN_LOCKED"

    def __init__(self, payroll_run_id: UUID):
        self.payroll_run_id = payroll_run_id
        super().__init__(f"Payroll run {payroll_run_id} is being processed elsewhere")


class RunLockRegistry:
    """Serializes status changes of the same run.

    Within a process, one asyncio.Lock per run id queues concurrent
    callers. Across processes, a PostgreSQL advisory lock keyed by the run
    id is taken on the caller's session when advisory locking is enabled;
    failing to get it raises RunLockedError instead of waiting.
    """

    def __init__(self, use_advisory_locks: bool = False):
        self.use_advisory_locks = use_advisory_locks
        self._locks: dict[UUID, asyncio.Lock] = {}
        # Callers holding or waiting for each lock; the lock is dropped at zero
        self._users: dict[UUID, int] = {}
        self._cancellations: dict[UUID, asyncio.Event] = {}

    def _checkout(self, payroll_run_id: UUID) -> asyncio.Lock:
        self._users[payroll_run_id] = self._users.get(payroll_run_id, 0) + 1
        return self._locks.setdefault(payroll_run_id, asyncio.Lock())

    def _checkin(self, payroll_run_id: UUID) -> None:
        remaining = self._users[payroll_run_id] - 1
        if remaining:
            self._users[payroll_run_id] = remaining
        else:
            del self._users[payroll_run_id]
            del self._locks[payroll_run_id]

    def tracked_runs(self) -> int:
        """Number of runs with a lock currently held or awaited."""
        return len(self._locks)

    def is_locked(self, payroll_run_id: UUID) -> bool:
        lock = self._locks.get(payroll_run_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, payroll_run_id: UUID, session: AsyncSession | None = None) -> AsyncIterator[None]:
        """Hold the run's lock for the duration of the block."""
        lock = self._checkout(payroll_run_id)
        try:
            async with lock:
                if not self.use_advisory_locks or session is None:
                    yield
                    return

                key = str(payroll_run_id)
                if not await acquire_advisory_lock(session, key):
                    raise RunLockedError(payroll_run_id)
                try:
                    yield
                finally:
                    await release_advisory_lock(session, key)
                    logger.debug("Released advisory lock for run %s", payroll_run_id)
        finally:
            self._checkin(payroll_run_id)

    def start_calculation(self, payroll_run_id: UUID, cancel_event: asyncio.Event | None = None) -> asyncio.Event:
        """Register the cancellation event of a calculation in progress."""
        event = cancel_event if cancel_event is not None else asyncio.Event()
        self._cancellations[payroll_run_id] = event
        return event

    def finish_calculation(self, payroll_run_id: UUID) -> None:
        self._cancellations.pop(payroll_run_id, None)

    def request_cancellation(self, payroll_run_id: UUID) -> bool:
        """Ask a running calculation to stop dispatching employees.

        Returns False when no calculation of the run is in progress.
        """
        event = self._cancellations.get(payroll_run_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for payroll run %s", payroll_run_id)
        return True


@lru_cache(maxsize=2)
def get_run_lock_registry(use_advisory_locks: bool = False) -> RunLockRegistry:
    """Process-wide registry shared by service instances."""
    return RunLockRegistry(use_advisory_locks)
