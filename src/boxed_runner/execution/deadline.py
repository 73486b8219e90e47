from __future__ import annotations

import time
from typing import Callable


class Deadline:
    """Wall-clock budget shared by every step of one request.

    ``expired`` is the authoritative timeout signal: it turns true once the
    budget elapses and stays true, whatever the process reported.

    Example:
        ```python
        deadline = Deadline(10)
        result = engine.run(workspace, script, stdin=None, deadline=deadline)
        timed_out = deadline.expired
        ```
    """

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        """Start the budget now.

        Example:
            ```python
            deadline = Deadline(2.5)
            ```
        """
        if seconds <= 0:
            raise ValueError("Deadline seconds must be positive")
        self._clock = clock
        self.seconds = float(seconds)
        self.started_at = clock()
        self.expires_at = self.started_at + self.seconds

    @property
    def expired(self) -> bool:
        """Return True once the budget has elapsed.

        Example:
            ```python
            if deadline.expired:
                ...
            ```
        """
        return self._clock() >= self.expires_at

    def remaining(self) -> float:
        """Return seconds left, never negative.

        Example:
            ```python
            left = deadline.remaining()
            ```
        """
        return max(0.0, self.expires_at - self._clock())

    def elapsed(self) -> float:
        """Return seconds since the deadline started.

        Example:
            ```python
            took = deadline.elapsed()
            ```
        """
        return self._clock() - self.started_at
