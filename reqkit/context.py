from __future__ import annotations
import threading
import time
from typing import Callable, Dict, Optional


class Context:
    """
    Cancellation/deadline token threaded explicitly through a dispatch.

    A Context never starts timers. The deadline is checked before connecting
    and handed to the socket layer as the remaining time; cancel() runs the
    abort callbacks registered by in-flight dispatches, which shut their
    sockets down so the blocked call returns immediately.

    Example:
        ctx = Context(timeout=2.0)
        res = request.send_with_context(ctx)
        # from another thread: ctx.cancel()
    """

    def __init__(self, timeout: Optional[float] = None):
        self._deadline = None if timeout is None else time.monotonic() + timeout
        self._cancelled = False
        self._callbacks: Dict[int, Callable[[], None]] = {}
        self._next_id = 0
        self._lock = threading.Lock()
        self._detach: Optional[Callable[[], None]] = None

    @classmethod
    def background(cls) -> "Context":
        """A context that never expires and is only cancelled explicitly."""
        return cls()

    def with_timeout(self, timeout: float) -> "Context":
        """
        Derive a child that expires after `timeout` seconds or at this
        context's deadline, whichever comes first. Cancelling this context
        cancels the child too.
        """
        child = Context(timeout)
        if self._deadline is not None and self._deadline < child._deadline:
            child._deadline = self._deadline
        child._detach = self.on_cancel(child.cancel)
        return child

    @property
    def deadline(self) -> Optional[float]:
        """Deadline on the time.monotonic() clock, or None."""
        return self._deadline

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (never negative), or None."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def err(self) -> Optional[str]:
        if self._cancelled:
            return "cancelled"
        if self.expired:
            return "timeout"
        return None

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register `callback` to run once on cancel(). Returns a function that
        unregisters it. If the context is already cancelled the callback runs
        right away.
        """
        with self._lock:
            if not self._cancelled:
                key = self._next_id
                self._next_id += 1
                self._callbacks[key] = callback

                def unregister() -> None:
                    with self._lock:
                        self._callbacks.pop(key, None)

                return unregister
        callback()
        return lambda: None

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def release(self) -> None:
        """Drop every registered callback without firing it."""
        with self._lock:
            self._callbacks.clear()
        if self._detach is not None:
            self._detach()
            self._detach = None

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"Context(remaining={self.remaining()!r}, cancelled={self._cancelled!r})"
