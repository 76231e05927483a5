# matching/scheduler.py
"""
Deadline heap for response timeouts and request expirations.

Entries are (deadline, seq, key, callback). A due entry's callback is called
on the event loop; callbacks only post events into actor inboxes, so a
timeout that loses the race against an accept is simply ignored by the
actor.
"""
import asyncio
import heapq
import itertools
import logging

from django.utils import timezone

logger = logging.getLogger(__name__)


class DeadlineScheduler:

    def __init__(self, clock=timezone.now, poll_interval=1.0):
        self.clock = clock
        self.poll_interval = poll_interval
        self._heap = []
        self._cancelled = set()
        self._live = {}
        self._seq = itertools.count()
        self._wakeup = None
        self._task = None

    def __len__(self):
        return len(self._live)

    def schedule(self, when, key, callback):
        """
        Call `callback()` once `when` has passed. Re-scheduling a key
        replaces the earlier entry.
        """
        if key in self._live:
            self.cancel(key)
        seq = next(self._seq)
        heapq.heappush(self._heap, (when, seq, key, callback))
        self._live[key] = seq
        if self._wakeup is not None:
            self._wakeup.set()

    def cancel(self, key):
        seq = self._live.pop(key, None)
        if seq is not None:
            self._cancelled.add(seq)

    def next_deadline(self):
        while self._heap and self._heap[0][1] in self._cancelled:
            _, seq, _, _ = heapq.heappop(self._heap)
            self._cancelled.discard(seq)
        return self._heap[0][0] if self._heap else None

    def fire_due(self, now=None):
        """
        Run callbacks of every entry due at `now`.

        Returns:
            Number of callbacks fired
        """
        now = now or self.clock()
        fired = 0
        while self._heap and self._heap[0][0] <= now:
            when, seq, key, callback = heapq.heappop(self._heap)
            if seq in self._cancelled:
                self._cancelled.discard(seq)
                continue
            self._live.pop(key, None)
            try:
                callback()
            except Exception:
                logger.exception(f"Deadline callback for {key} failed")
            fired += 1
        return fired

    async def run(self):
        """Fire deadlines as they come due until cancelled"""
        self._wakeup = asyncio.Event()
        try:
            while True:
                self.fire_due()
                deadline = self.next_deadline()
                timeout = self.poll_interval
                if deadline is not None:
                    timeout = min(max((deadline - self.clock()).total_seconds(), 0.0), self.poll_interval)
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._wakeup = None

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
