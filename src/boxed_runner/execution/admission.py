from __future__ import annotations

import contextlib
import logging
import threading
from typing import Iterator

from ..errors import AdmissionRefused

logger = logging.getLogger(__name__)


class AdmissionGate:
    """Bound how many sandboxes run at once.

    ``limit == 0`` admits everything immediately.

    Example:
        ```python
        gate = AdmissionGate(4)
        with gate.slot(timeout=5):
            ...
        ```
    """

    def __init__(self, limit: int) -> None:
        """Create a gate with ``limit`` slots.

        Example:
            ```python
            gate = AdmissionGate(limit=2)
            ```
        """
        if limit < 0:
            raise ValueError("limit must be >= 0")
        self.limit = limit
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(limit) if limit else None
        self._in_use = 0

    @property
    def in_use(self) -> int:
        """Return how many slots are currently held.

        Example:
            ```python
            busy = gate.in_use
            ```
        """
        with self._lock:
            return self._in_use

    @contextlib.contextmanager
    def slot(self, timeout: float) -> Iterator[None]:
        """Hold one slot for the duration of the block.

        Raises ``AdmissionRefused`` when no slot frees up within ``timeout``.

        Example:
            ```python
            with gate.slot(timeout=5):
                run_sandbox()
            ```
        """
        if self._slots is not None and not self._slots.acquire(timeout=timeout):
            logger.warning("Admission refused: %d sandbox slot(s) busy for %ss", self.limit, timeout)
            raise AdmissionRefused(f"All {self.limit} sandbox slots busy for {timeout}s")
        with self._lock:
            self._in_use += 1
        try:
            yield
        finally:
            with self._lock:
                self._in_use -= 1
            if self._slots is not None:
                self._slots.release()


_GATES_LOCK = threading.Lock()
_GATES: dict[int, AdmissionGate] = {}


def gate_for(limit: int) -> AdmissionGate:
    """Return the process-wide gate for a concurrency limit.

    Example:
        ```python
        gate = gate_for(settings.max_concurrent)
        ```
    """
    with _GATES_LOCK:
        gate = _GATES.get(limit)
        if gate is None:
            gate = AdmissionGate(limit)
            _GATES[limit] = gate
        return gate
