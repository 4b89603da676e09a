"""
Per-batch serialization of mutating pipeline calls.

A second mutating call on a batch that is already held fails immediately; it
is never queued. Persisted ``committing``/``rolling_back`` statuses cover the
cross-process case.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Type

from roster_app.importer.errors import BatchBusy, BatchStateError


class BatchLockRegistry:
    """Process-local map of batch id to the operation currently holding it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: dict[int, str] = {}

    def acquire(
        self,
        batch_id: int,
        operation: str,
        *,
        conflict: Type[BatchStateError] = BatchBusy,
    ) -> None:
        with self._guard:
            holder = self._held.get(batch_id)
            if holder is not None:
                raise conflict(
                    f"Batch {batch_id} is busy ({holder} in progress); try again shortly.",
                    batch_id=batch_id,
                    operation=holder,
                )
            self._held[batch_id] = operation

    def release(self, batch_id: int) -> None:
        with self._guard:
            self._held.pop(batch_id, None)

    def is_locked(self, batch_id: int) -> bool:
        with self._guard:
            return batch_id in self._held

    def holder(self, batch_id: int) -> str | None:
        with self._guard:
            return self._held.get(batch_id)

    @contextmanager
    def hold(
        self,
        batch_id: int,
        operation: str,
        *,
        conflict: Type[BatchStateError] = BatchBusy,
    ) -> Iterator[None]:
        self.acquire(batch_id, operation, conflict=conflict)
        try:
            yield
        finally:
            self.release(batch_id)


batch_locks = BatchLockRegistry()
