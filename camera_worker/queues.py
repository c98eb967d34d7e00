# queues.py
"""
Bounded hand-off buffers between a pipeline's run loop and its send workers.
Producers never block: a full buffer drops its oldest entry.
"""
import threading
from collections import deque


class FrameSlot:
    """Single-frame buffer. A new frame replaces a pending unsent one."""

    def __init__(self):
        self._cond = threading.Condition()
        self._frame = None
        self._pending = False
        self.replaced = 0

    def offer(self, frame):
        with self._cond:
            if self._pending:
                self.replaced += 1
            self._frame = frame
            self._pending = True
            self._cond.notify()

    def take(self, timeout):
        """Pop the pending frame, waiting up to timeout seconds. Returns None if empty."""
        with self._cond:
            if not self._pending:
                self._cond.wait(timeout)
            if not self._pending:
                return None
            frame = self._frame
            self._frame = None
            self._pending = False
            return frame

    def clear(self):
        with self._cond:
            dropped = self._pending
            self._frame = None
            self._pending = False
            return dropped

    def wake(self):
        with self._cond:
            self._cond.notify_all()

    def __len__(self):
        with self._cond:
            return 1 if self._pending else 0


class ReportBuffer:
    """
    Bounded FIFO of detection events awaiting delivery.

    The consumer peeks the head and sends it. On success it calls ``ack``; on
    failure it calls ``release`` and the event stays queued for retry.
    Overflow evicts the oldest event and increments ``dropped``, which only
    ever grows. An event evicted while it is being sent is counted as dropped
    only if that send fails.
    """

    def __init__(self, capacity):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items = deque()
        self._cond = threading.Condition()
        self._in_flight = None
        self._in_flight_evicted = False
        self.dropped = 0

    def put(self, item):
        with self._cond:
            if len(self._items) >= self.capacity:
                evicted = self._items.popleft()
                if evicted is self._in_flight:
                    self._in_flight_evicted = True
                else:
                    self.dropped += 1
            self._items.append(item)
            self._cond.notify()

    def peek(self, timeout):
        """Oldest event without removing it, waiting up to timeout seconds. None if empty."""
        with self._cond:
            if not self._items:
                self._cond.wait(timeout)
            if not self._items:
                return None
            self._in_flight = self._items[0]
            self._in_flight_evicted = False
            return self._in_flight

    def ack(self, item):
        """Remove a delivered event, unless overflow already evicted it."""
        with self._cond:
            if self._items and self._items[0] is item:
                self._items.popleft()
            self._settle(item)

    def release(self, item):
        """
        Give back an event whose send failed. Returns True if it is still
        queued, False if overflow evicted it meanwhile (it then counts as dropped).
        """
        with self._cond:
            if item is self._in_flight and self._in_flight_evicted:
                self.dropped += 1
                self._settle(item)
                return False
            self._settle(item)
            return bool(self._items) and self._items[0] is item

    def _settle(self, item):
        if item is self._in_flight:
            self._in_flight = None
            self._in_flight_evicted = False

    def clear(self):
        with self._cond:
            count = len(self._items)
            self._items.clear()
            return count

    def wake(self):
        with self._cond:
            self._cond.notify_all()

    def __len__(self):
        with self._cond:
            return len(self._items)
