# Copyright (C) 2025
#      The Board of Trustees of the Leland Stanford Junior University
# Written by Stephane Thiell <sthiell@stanford.edu>
#
# Licensed under GPL v3 (see https://www.gnu.org/licenses/).
"""
Delayed, rate-limited work queue for the cleanup controller.

Items are namedtuples carrying their own `attempt` counter; a failed item is
re-queued as a copy with attempt+1, so the backoff state travels with the
item rather than living in the queue.
"""

import time
import heapq
import itertools
import threading


class ItemExponentialFailureRateLimiter:
    """base_delay * 2**attempt, capped at max_delay."""

    def __init__(self, base_delay=0.005, max_delay=1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay

    def when(self, attempt):
        if attempt >= 64:
            return self.max_delay
        return min(self.base_delay * (2 ** attempt), self.max_delay)


class BucketRateLimiter:
    """Token bucket shared by every retried item."""

    def __init__(self, qps=10.0, burst=100, clock=time.monotonic):
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = clock()

    def when(self):
        """Reserves one token and returns how long to wait for it."""
        with self._lock:
            now = self._clock()
            self._tokens = min(self.burst, self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps


class DefaultControllerRateLimiter:
    """The larger of the per-item exponential backoff and the token bucket delay."""

    def __init__(self, item_limiter=None, bucket_limiter=None):
        self.item_limiter = item_limiter or ItemExponentialFailureRateLimiter()
        self.bucket_limiter = bucket_limiter or BucketRateLimiter()

    def when(self, attempt):
        return max(self.item_limiter.when(attempt), self.bucket_limiter.when())


class DelayingQueue:
    """
    Min-heap of (ready_at, seq, item) guarded by a Condition. get() blocks
    until the earliest item is due, or returns None once shut down.
    """

    def __init__(self, rate_limiter=None, clock=time.monotonic):
        self.rate_limiter = rate_limiter or DefaultControllerRateLimiter()
        self._clock = clock
        self._cond = threading.Condition()
        self._heap = []
        self._seq = itertools.count()
        self._shutting_down = False

    def add_after(self, item, delay):
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._heap, (self._clock() + max(0, delay), next(self._seq), item))
            self._cond.notify()

    def add(self, item):
        self.add_after(item, 0)

    def add_rate_limited(self, item):
        """Re-queues a copy of item with attempt+1, after the backoff for its attempt."""
        self.add_after(item._replace(attempt=item.attempt + 1), self.rate_limiter.when(item.attempt))

    def get(self, timeout=None):
        """Returns the next due item, or None on shutdown or timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while not self._shutting_down:
                now = self._clock()
                if self._heap and self._heap[0][0] <= now:
                    return heapq.heappop(self._heap)[2]
                wait = None
                if self._heap:
                    wait = self._heap[0][0] - now
                if deadline is not None:
                    if now >= deadline:
                        return None
                    wait = deadline - now if wait is None else min(wait, deadline - now)
                self._cond.wait(wait)
            return None

    def shut_down(self):
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shutting_down(self):
        with self._cond:
            return self._shutting_down

    def __len__(self):
        with self._cond:
            return len(self._heap)
