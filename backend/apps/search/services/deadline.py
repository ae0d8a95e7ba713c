"""
Cancellable deadlines.

A ``Deadline`` is created per request and handed down to every blocking
call (HTTP requests, semaphore waits, store queries). Child deadlines share
the parent's expiry and are cancelled together with it, which lets a failed
fan-out abort its siblings without touching the caller's deadline.
"""

import threading
import time
from typing import List, Optional

from apps.search.exceptions import DeadlineExceeded, OperationCancelled

DEFAULT_POLL_INTERVAL = 0.05


class Deadline:
    """Monotonic expiry plus a cancellation flag."""

    def __init__(self, timeout: Optional[float] = None, parent: Optional["Deadline"] = None):
        expires_at = None
        if timeout is not None:
            expires_at = time.monotonic() + max(0.0, timeout)
        if parent is not None and parent.expires_at is not None:
            expires_at = (
                parent.expires_at if expires_at is None
                else min(expires_at, parent.expires_at)
            )
        self.expires_at: Optional[float] = expires_at
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List["Deadline"] = []
        if parent is not None:
            parent._adopt(self)

    def __repr__(self) -> str:
        return f"<Deadline remaining={self.remaining()} cancelled={self.cancelled}>"

    def _adopt(self, child: "Deadline") -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.append(child)
                return
        child.cancel()

    def child(self, timeout: Optional[float] = None) -> "Deadline":
        """Return a deadline bounded by this one that can be cancelled on its own."""
        return Deadline(timeout, parent=self)

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            children, self._children = self._children, []
        for child in children:
            child.cancel()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left, or ``None`` when there is no expiry."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        """Raise if the deadline was cancelled or has passed."""
        if self._event.is_set():
            raise OperationCancelled("Operation was cancelled")
        if self.expired:
            raise DeadlineExceeded("Deadline exceeded")

    def timeout_for(self, cap: Optional[float]) -> Optional[float]:
        """Socket timeout for a blocking call: the smaller of ``cap`` and the time left."""
        self.check()
        remaining = self.remaining()
        if remaining is None:
            return cap
        if cap is None:
            return remaining
        return min(cap, remaining)

    def sleep(self, seconds: float) -> None:
        """Wait ``seconds`` unless cancelled or expired first, in which case raise."""
        self.check()
        if seconds <= 0:
            return
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self._event.wait(remaining)
            self.check()
            raise DeadlineExceeded("Deadline exceeded while waiting")
        if self._event.wait(seconds):
            raise OperationCancelled("Operation was cancelled while waiting")

    def acquire(self, semaphore, poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
        """Acquire ``semaphore``, giving up when the deadline is cancelled or expires."""
        while True:
            self.check()
            wait = poll_interval
            remaining = self.remaining()
            if remaining is not None:
                wait = min(wait, remaining)
            if semaphore.acquire(timeout=wait):
                return
