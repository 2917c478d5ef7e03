from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Generic, TypeVar

from regularization.errors import ComputationError, RegularizationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SnapshotCache(Generic[T]):
    """One immutable value, rebuilt explicitly and swapped in a single step.

    Readers never see a half-built value: ``rebuild`` only replaces the
    snapshot after the builder returned. A failed rebuild keeps the last good
    value. ``generation`` increases on every successful publish so consumers
    can tell whether what they hold is current.
    """

    def __init__(self, name: str, builder: Callable[[], Awaitable[T]]) -> None:
        self.name = name
        self._builder = builder
        self._value: T | None = None
        self._generation = 0
        self._stale = True
        self._epoch = 0
        self._lock = asyncio.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_stale(self) -> bool:
        return self._stale

    def peek(self) -> T | None:
        return self._value

    def invalidate(self) -> None:
        self._stale = True
        self._epoch += 1
        logger.info("Snapshot %s invalidated at generation %d", self.name, self._generation)

    def publish(self, value: T, epoch: int | None = None) -> int:
        """Swap in ``value``. It stays stale if invalidated since ``epoch`` was read."""
        self._value = value
        self._generation += 1
        self._stale = epoch is not None and epoch != self._epoch
        return self._generation

    async def _rebuild_locked(self) -> T:
        t0 = time.monotonic()
        epoch = self._epoch
        try:
            value = await self._builder()
        except ComputationError:
            logger.exception("Rebuild of %s failed; keeping generation %d", self.name, self._generation)
            raise
        except RegularizationError:
            raise
        except Exception as exc:
            logger.exception("Rebuild of %s failed; keeping generation %d", self.name, self._generation)
            raise ComputationError(f"Failed to rebuild {self.name}: {exc}") from exc
        generation = self.publish(value, epoch=epoch)
        logger.info("Snapshot %s published generation %d in %.3fs", self.name, generation, time.monotonic() - t0)
        if self._stale:
            logger.info("Snapshot %s was invalidated during its rebuild; still stale", self.name)
        return value

    def _fresh(self) -> bool:
        return self._value is not None and not self._stale

    async def rebuild(self) -> T:
        async with self._lock:
            return await self._rebuild_locked()

    async def get(self) -> T:
        if self._fresh():
            return self._value
        async with self._lock:
            # another reader may have rebuilt while we waited
            if self._fresh():
                return self._value
            return await self._rebuild_locked()
