"""Process-local fallback store for rate limit state.

Notes:
- Per-process only: while Redis is unreachable every worker enforces its own
  independent limits. This relaxation is accepted during outages.
- Thread-safe: uses a lock around shared state, so the sweep can run on a
  worker thread while requests are being decided on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Deletions per lock acquisition during a sweep.
SWEEP_BATCH_SIZE = 256

# update(state) -> (result, new_state, expires_at_ms); new_state None keeps the entry as is
StateUpdate = Callable[[Any | None], tuple[T, Any | None, float]]


@dataclass
class _Entry:
    state: Any
    expires_at: float


class InMemoryFallbackStore:
    """Key -> state map with expiry, addressed like the shared store.

    The state shape is owned by the strategy (counter, timestamp deque or
    token bucket); the store only tracks when each entry stops mattering.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"InMemoryFallbackStore(size={len(self)})"

    def transact(self, key: str, now_ms: float, update: StateUpdate[T]) -> T:
        """Apply a state transition to ``key`` atomically.

        Entries whose expiry has passed are presented to ``update`` as absent
        even if the sweep has not removed them yet.

        Args:
            key: Store key.
            now_ms: Current epoch milliseconds.
            update: Transition returning (result, new_state, expires_at_ms).

        Returns:
            The ``result`` produced by ``update``.
        """

        with self._lock:
            entry = self._entries.get(key)
            state = entry.state if entry is not None and now_ms <= entry.expires_at else None

            result, new_state, expires_at = update(state)
            if new_state is not None:
                self._entries[key] = _Entry(state=new_state, expires_at=expires_at)
            return result

    def peek(self, key: str) -> Any | None:
        """Return the raw state stored for ``key`` regardless of expiry."""

        with self._lock:
            entry = self._entries.get(key)
            return entry.state if entry is not None else None

    def sweep(self, now_ms: float, batch_size: int = SWEEP_BATCH_SIZE) -> int:
        """Remove entries whose expiry time has passed.

        The scan runs on a snapshot outside the lock; deletions happen in
        small locked batches so concurrent ``transact`` calls only ever wait
        for one batch. An entry refreshed after the snapshot is kept.

        Args:
            now_ms: Current epoch milliseconds.
            batch_size: Maximum deletions per lock acquisition.

        Returns:
            Number of entries removed.
        """

        with self._lock:
            snapshot = list(self._entries.items())
        expired = [key for key, entry in snapshot if now_ms > entry.expires_at]

        removed = 0
        for start in range(0, len(expired), batch_size):
            with self._lock:
                for key in expired[start:start + batch_size]:
                    entry = self._entries.get(key)
                    if entry is not None and now_ms > entry.expires_at:
                        del self._entries[key]
                        removed += 1
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class FallbackSweeper:
    """Periodically sweeps an ``InMemoryFallbackStore`` in the background.

    The sweep itself runs in a worker thread so a large store never stalls
    the event loop serving requests.
    """

    def __init__(
        self,
        store: InMemoryFallbackStore,
        *,
        interval_seconds: float,
        clock: Callable[[], float],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")

        self._store = store
        self._interval = interval_seconds
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Sweep once and return the number of removed entries."""

        removed = await asyncio.to_thread(self._store.sweep, self._clock())
        if removed:
            logger.debug(
                "rate_limit.fallback_swept",
                extra={"removed": removed, "size": len(self._store)},
            )
        return removed

    def start(self) -> None:
        """Schedule the sweep loop on the running event loop."""

        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="rate-limit-fallback-sweeper")

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""

        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("rate_limit.fallback_sweep_failed")
