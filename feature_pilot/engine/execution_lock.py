"""
Per-session exclusive lock for the Stage-3 execution loop.

At most one execution loop may run for a ``(project_id, feature_id)`` key.
A second attempt while the lock is held is not queued: ``hold`` yields
False and the caller returns without doing anything. Release is guaranteed
on every exit path of the ``async with`` block, including exceptions.

A lock held longer than the configured timeout is treated as stale (its
holder is assumed lost) and can be taken over. The original holder's
release then does not free the new holder's lock.

Example:
    >>> locks = ExecutionLock(timeout_seconds=600)
    >>> async with locks.hold(project_id, feature_id) as acquired:
    ...     if not acquired:
    ...         return
    ...     await run_steps()
"""

import itertools
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog

log = structlog.get_logger(__name__)


@dataclass
class _Holder:
    token: int
    acquired_at: float


class ExecutionLock:
    """In-memory lock registry keyed by session.

    Thread Safety:
        Designed for a single asyncio event loop. Acquisition never awaits
        between checking and taking the lock, so it is atomic with respect
        to other tasks on the same loop.

    Args:
        timeout_seconds: Age after which a held lock is considered stale
        clock: Monotonic clock, injectable for tests
    """

    def __init__(self, timeout_seconds: float = 600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._holders: dict[str, _Holder] = {}
        self._tokens = itertools.count(1)

    @staticmethod
    def key(project_id: str, feature_id: str) -> str:
        return f"{project_id}/{feature_id}"

    def _is_stale(self, holder: _Holder) -> bool:
        return self._clock() - holder.acquired_at >= self.timeout_seconds

    def try_acquire(self, project_id: str, feature_id: str) -> int | None:
        """Take the lock if free or stale.

        Returns:
            A release token, or None when the lock is held by someone else.
        """
        key = self.key(project_id, feature_id)
        holder = self._holders.get(key)
        if holder is not None:
            if not self._is_stale(holder):
                return None
            log.warning("execution_lock_stale_takeover", key=key, held_seconds=self._clock() - holder.acquired_at)

        token = next(self._tokens)
        self._holders[key] = _Holder(token=token, acquired_at=self._clock())
        log.debug("execution_lock_acquired", key=key)
        return token

    def release(self, project_id: str, feature_id: str, token: int) -> None:
        """Release the lock if ``token`` still owns it."""
        key = self.key(project_id, feature_id)
        holder = self._holders.get(key)
        if holder is not None and holder.token == token:
            del self._holders[key]
            log.debug("execution_lock_released", key=key)

    def is_locked(self, project_id: str, feature_id: str) -> bool:
        holder = self._holders.get(self.key(project_id, feature_id))
        return holder is not None and not self._is_stale(holder)

    @property
    def active_count(self) -> int:
        """Number of locks currently held and not stale."""
        return sum(1 for holder in self._holders.values() if not self._is_stale(holder))

    @asynccontextmanager
    async def hold(self, project_id: str, feature_id: str) -> AsyncIterator[bool]:
        """Hold the lock for the duration of the block.

        Yields:
            True when the lock was acquired, False when another loop holds it
        """
        token = self.try_acquire(project_id, feature_id)
        if token is None:
            log.warning("execution_loop_already_running", project_id=project_id, feature_id=feature_id)
            yield False
            return

        try:
            yield True
        finally:
            self.release(project_id, feature_id, token)
