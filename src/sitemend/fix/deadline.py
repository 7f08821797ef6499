"""Per-fix time budget and cooperative cancellation."""

from __future__ import annotations

import threading
import time
from typing import Callable

from sitemend.core.errors import FixCancelledError, FixTimeoutError


class CancelToken:
    """Shared flag a caller flips to abort in-progress fixes."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class Deadline:
    """Time budget checked by strategies between discrete steps.

    ``check`` raises rather than returning a flag so a strategy deep inside a
    per-file loop unwinds to its own error handling in one move.
    """

    def __init__(
        self,
        seconds: float | None,
        token: CancelToken | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._expires = clock() + seconds if seconds is not None else None
        self.seconds = seconds
        self.token = token

    def remaining(self) -> float | None:
        if self._expires is None:
            return None
        return max(0.0, self._expires - self._clock())

    @property
    def expired(self) -> bool:
        return self._expires is not None and self._clock() >= self._expires

    def check(self, step: str = "") -> None:
        where = f" during {step}" if step else ""
        if self.token is not None and self.token.cancelled:
            raise FixCancelledError(f"fix cancelled{where}")
        if self.expired:
            raise FixTimeoutError(f"fix exceeded {self.seconds:g}s budget{where}")
