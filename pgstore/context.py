"""Cancellation and deadline token passed to every query."""

from __future__ import annotations

import threading
import time
from typing import Callable

from .errors import QueryCancelledError

CancelCallback = Callable[[], None]


class QueryContext:
    """Carries an optional deadline and a cancel flag across threads.

    Engines register callbacks through :meth:`on_cancel` so that an
    in-flight query is aborted as soon as :meth:`cancel` is called.
    """

    def __init__(self, *, timeout: float | None = None) -> None:
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must not be negative")
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[CancelCallback] = []

    @classmethod
    def background(cls) -> QueryContext:
        """A context that never expires unless cancelled explicitly."""

        return cls()

    @property
    def deadline(self) -> float | None:
        """Deadline on the ``time.monotonic`` clock, if any."""

        return self._deadline

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline; ``None`` when unbounded."""

        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def err(self) -> QueryCancelledError | None:
        """Return the cancellation error, or ``None`` while the context is live."""

        if self.cancelled:
            return QueryCancelledError("context canceled")
        if self.expired:
            return QueryCancelledError("context deadline exceeded")
        return None

    def cancel(self) -> None:
        """Cancel the context and notify registered callbacks once."""

        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            callbacks = tuple(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: CancelCallback) -> Callable[[], None]:
        """Register a cancel callback; returns an unregister handle.

        The callback runs immediately when the context is already cancelled.
        """

        with self._lock:
            if not self._cancelled.is_set():
                self._callbacks.append(callback)

                def _unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _unregister
        callback()
        return lambda: None


__all__ = ["CancelCallback", "QueryContext"]
