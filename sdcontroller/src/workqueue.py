from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque

from sdcontroller.src.delta import merge_envelopes
from sdcontroller.src.metrics import METRICS
from sdcontroller.src.models import Envelope


class RateLimitingQueue:
    """Deduplicating FIFO of envelopes with per-key exponential backoff.

    Envelopes are identified by ``key``. Adding a key that is already waiting
    merges the two envelopes with :func:`merge_envelopes` without moving the
    key in the line, so removed-controller entries from both survive. A
    rate-limited retry counts as older than anything added while it waited.
    Adding a key that a worker is currently processing parks the
    envelope until :meth:`done` is called for that key, so the same key is
    never handed to two workers at once.

    Key internal state:
        ``_order``
            Keys ready to be handed out, oldest first.
        ``_pending``
            Merged envelope per key that is queued or parked.
        ``_processing``
            Keys handed out by :meth:`get` and not yet marked done.
        ``_delayed``
            Heap of ``(due_at, seq, is_retry, envelope)`` using ``time.monotonic()``
            deadlines, promoted into the queue by :meth:`get`.
        ``_failures``
            Requeue counters used for backoff, cleared by :meth:`forget`.
    """

    def __init__(
        self,
        base_delay_seconds: float = 0.005,
        max_delay_seconds: float = 30.0,
    ) -> None:
        if base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")

        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

        self._cond = threading.Condition()
        self._order: deque[str] = deque()
        self._pending: dict[str, Envelope] = {}
        self._processing: set[str] = set()
        self._delayed: list[tuple[float, int, bool, Envelope]] = []
        self._seq = itertools.count()
        self._failures: dict[str, int] = {}
        self._shutting_down = False

    def _publish_depth(self) -> None:
        METRICS.queue_depth.set(len(self._order))

    def _add_locked(self, envelope: Envelope, is_retry: bool = False) -> None:
        key = envelope.key
        waiting = self._pending.get(key)
        if waiting is not None:
            if is_retry:
                self._pending[key] = merge_envelopes(envelope, waiting)
            else:
                self._pending[key] = merge_envelopes(waiting, envelope)
            return
        self._pending[key] = envelope
        if key in self._processing:
            return
        self._order.append(key)
        self._publish_depth()
        self._cond.notify()

    def _promote_due(self, now_monotonic: float) -> None:
        while self._delayed and self._delayed[0][0] <= now_monotonic:
            _, _, is_retry, envelope = heapq.heappop(self._delayed)
            self._add_locked(envelope, is_retry)

    def add(self, envelope: Envelope) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(envelope)

    def add_after(self, envelope: Envelope, delay_seconds: float) -> None:
        with self._cond:
            self._add_after_locked(envelope, delay_seconds, is_retry=False)

    def _add_after_locked(self, envelope: Envelope, delay_seconds: float, is_retry: bool) -> None:
        if self._shutting_down:
            return
        if delay_seconds <= 0:
            self._add_locked(envelope, is_retry)
            return
        due_at = time.monotonic() + delay_seconds
        heapq.heappush(self._delayed, (due_at, next(self._seq), is_retry, envelope))
        self._cond.notify()

    def backoff_for(self, key: str) -> float:
        """Return the delay the next rate-limited add of *key* will use."""
        attempt = self._failures.get(key, 0) + 1
        return min(self.max_delay_seconds, self.base_delay_seconds * float(2 ** (attempt - 1)))

    def add_rate_limited(self, envelope: Envelope) -> None:
        with self._cond:
            delay_seconds = self.backoff_for(envelope.key)
            self._failures[envelope.key] = self._failures.get(envelope.key, 0) + 1
            self._add_after_locked(envelope, delay_seconds, is_retry=True)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def get(self) -> tuple[Envelope | None, bool]:
        """Block until an envelope is ready or the queue shuts down.

        Returns ``(envelope, False)`` on success and ``(None, True)`` once the
        queue is shutting down. Envelopes still queued at shutdown are
        abandoned.
        """
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                now_monotonic = time.monotonic()
                self._promote_due(now_monotonic)
                if self._order:
                    break
                timeout = None
                if self._delayed:
                    timeout = max(0.0, self._delayed[0][0] - now_monotonic)
                self._cond.wait(timeout=timeout)

            key = self._order.popleft()
            envelope = self._pending.pop(key)
            self._processing.add(key)
            self._publish_depth()
            return envelope, False

    def done(self, envelope: Envelope) -> None:
        with self._cond:
            key = envelope.key
            self._processing.discard(key)
            if key in self._pending and not self._shutting_down:
                self._order.append(key)
                self._publish_depth()
                self._cond.notify()

    def __len__(self) -> int:
        with self._cond:
            return len(self._order)

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
