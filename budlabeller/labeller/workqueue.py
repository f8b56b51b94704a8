#  -----------------------------------------------------------------------------
#  Copyright (c) 2024 Bud Ecosystem Inc.
#  #
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#  #
#      http://www.apache.org/licenses/LICENSE-2.0
#  #
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#  -----------------------------------------------------------------------------

"""Deduplicating, delaying and rate limited work queue for reconcile keys.

Semantics follow the controller work queue found in Kubernetes controllers:

- A key is stored at most once while it waits in the queue.
- A key that is added while it is being processed is queued again once the
  worker calls `done`, so the same key never runs in two workers at once.
- `add_rate_limited` delays a key by the configured rate limiter; `forget`
  resets its failure history.
"""

import heapq
import itertools
import time
from abc import ABC, abstractmethod
from collections import deque
from threading import Condition, Lock
from typing import Callable, Deque, Dict, Hashable, List, Optional, Set, Tuple

from tenacity import RetryCallState, wait_exponential


Clock = Callable[[], float]


class RateLimiter(ABC):
    """Decides how long a key waits before it is re-queued."""

    @abstractmethod
    def when(self, item: Hashable) -> float:
        """Return the delay in seconds before the item is processed again."""

    @abstractmethod
    def forget(self, item: Hashable) -> None:
        """Drop any state kept for the item."""

    @abstractmethod
    def num_requeues(self, item: Hashable) -> int:
        """Return how many times the item was rate limited since it was last forgotten."""


class ItemExponentialFailureRateLimiter(RateLimiter):
    """Per-key exponential backoff: base_delay * 2^failures, capped at max_delay."""

    def __init__(self, base_delay: float, max_delay: float):
        """Initialize the limiter with its base and maximum delay in seconds."""
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._wait = wait_exponential(multiplier=base_delay, max=max_delay)
        self._failures: Dict[Hashable, int] = {}
        self._lock = Lock()

    def when(self, item: Hashable) -> float:
        """Return the backoff for the item and count one more failure."""
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # the first attempt waits multiplier * 2**0
        retry_state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        retry_state.attempt_number = exponent + 1
        return self._wait(retry_state)

    def forget(self, item: Hashable) -> None:
        """Reset the failure count of the item."""
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        """Return the failure count of the item."""
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter(RateLimiter):
    """Token bucket shared by all keys, bounding the overall retry rate."""

    def __init__(self, qps: float, burst: int, clock: Clock = time.monotonic):
        """Initialize the bucket with its refill rate and size."""
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = Lock()

    def when(self, item: Hashable) -> float:
        """Reserve a token and return how long to wait for it."""
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        """Nothing is tracked per key."""

    def num_requeues(self, item: Hashable) -> int:
        """Nothing is tracked per key."""
        return 0


class MaxOfRateLimiter(RateLimiter):
    """Combines limiters by taking the longest delay."""

    def __init__(self, *limiters: RateLimiter):
        """Initialize with the limiters to combine."""
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        """Return the longest delay of all limiters."""
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        """Forget the item in all limiters."""
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        """Return the highest requeue count of all limiters."""
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> RateLimiter:
    """Per-key exponential backoff combined with an overall token bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        BucketRateLimiter(qps, burst),
    )


class RateLimitingQueue:
    """Thread safe work queue with deduplication, delayed adds and rate limiting."""

    def __init__(self, rate_limiter: Optional[RateLimiter] = None, name: str = "", clock: Clock = time.monotonic):
        """Initialize an empty queue."""
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock
        self._cond = Condition()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._waiting: List[Tuple[float, int, Hashable]] = []
        self._waiting_ready_at: Dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        """Return the number of keys ready to be processed."""
        with self._cond:
            return len(self._queue)

    def add(self, item: Hashable) -> None:
        """Queue the item unless it is already queued."""
        with self._cond:
            self._add_locked(item)

    def _add_locked(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def get(self) -> Tuple[Optional[Hashable], bool]:
        """Block until a key is ready.

        Returns:
            The key and False, or None and True once the queue is shut down.
        """
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                self._promote_ready_locked()
                if self._queue:
                    break
                self._cond.wait(self._next_ready_in_locked())

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        """Mark the item as processed, re-queueing it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._cond.notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        """Queue the item once the delay in seconds has passed."""
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(item)
                return

            ready_at = self._clock() + delay
            current = self._waiting_ready_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._waiting_ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), item))
            self._cond.notify_all()

    def _promote_ready_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, item = heapq.heappop(self._waiting)
            # a later add_after with an earlier deadline supersedes this entry
            if self._waiting_ready_at.get(item) != ready_at:
                continue
            del self._waiting_ready_at[item]
            self._add_locked(item)

    def _next_ready_in_locked(self) -> Optional[float]:
        if not self._waiting:
            return None
        return max(self._waiting[0][0] - self._clock(), 0.0)

    def add_rate_limited(self, item: Hashable) -> None:
        """Queue the item after the delay chosen by the rate limiter."""
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        """Stop tracking retries of the item."""
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        """Return how many times the item was rate limited."""
        return self.rate_limiter.num_requeues(item)

    def shut_down(self) -> None:
        """Stop handing out keys and wake up every waiting worker."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shutting_down(self) -> bool:
        """Whether the queue was shut down."""
        with self._cond:
            return self._shutting_down
