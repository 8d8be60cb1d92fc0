"""Message channels shared by the router and its actors.

All cross-thread communication goes through these two primitives:

- ``Mailbox``: an unbounded, multi-producer single-consumer queue which the
  consumer closes when it stops. Sending into a closed mailbox fails, which is
  how producers learn that the consumer is gone.
- ``Reply``: a single-use response slot used by popups. Cancelling it is the
  equivalent of the popup disappearing without answering.
"""

from __future__ import annotations

import queue
import threading
from typing import Any, Generic, Optional, TypeVar

from .errors import ChannelClosed, Dismissed

T = TypeVar("T")

_CLOSED = object()


class Mailbox(Generic[T]):
    def __init__(self, name: str = "") -> None:
        self.name = name
        self._q: "queue.Queue[Any]" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, item: T) -> None:
        with self._lock:
            if self._closed:
                raise ChannelClosed(f"mailbox {self.name or id(self)} is closed")
            self._q.put(item)

    def close(self) -> None:
        """Close the mailbox. Items already queued can still be received."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            # Wake up a consumer blocked in receive().
            self._q.put(_CLOSED)

    def receive(self, timeout: Optional[float] = None) -> T:
        """Block for the next item.

        Raises ``queue.Empty`` on timeout and ``ChannelClosed`` once the
        mailbox is closed and drained.
        """
        item = self._q.get(timeout=timeout)
        if item is _CLOSED:
            # Keep the marker for any later receive() call.
            self._q.put(_CLOSED)
            raise ChannelClosed(f"mailbox {self.name or id(self)} is closed")
        return item

    def receive_nowait(self) -> Optional[T]:
        """Return the next item, or None if nothing is queued."""
        try:
            item = self._q.get_nowait()
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._q.put(_CLOSED)
            raise ChannelClosed(f"mailbox {self.name or id(self)} is closed")
        return item

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Mailbox {self.name!r} {state}>"


class Reply(Generic[T]):
    """Single-use response slot (one value, or cancellation)."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._value: Optional[T] = None
        self._cancelled = False
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        return not self._event.is_set()

    def set(self, value: T) -> bool:
        """Store the response. Returns False if the slot was already used."""
        with self._lock:
            if self._event.is_set():
                return False
            self._value = value
            self._event.set()
            return True

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._cancelled = True
            self._event.set()

    def wait(self, timeout: Optional[float] = None) -> T:
        """Block until a value is produced.

        Raises ``Dismissed`` if the slot was cancelled, ``TimeoutError`` if
        ``timeout`` elapses first.
        """
        if not self._event.wait(timeout):
            raise TimeoutError("no response")
        if self._cancelled:
            raise Dismissed("popup dismissed")
        return self._value  # type: ignore[return-value]
