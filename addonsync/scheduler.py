"""Heap-driven scheduler running account syncs on a cadence.

Frequencies are strings: ``"0"`` (disabled), ``"<N>m"`` (every N minutes),
``"<N>d"`` (every N days, aligned to local midnight) or a bare number of
minutes. Minute cadences get a small random jitter so many accounts on the
same cadence do not hit the remote API at the same instant.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import random
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Any, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger("addonsync.scheduler")

MINUTE = 60.0
DAY = 24 * 60 * MINUTE
DEFAULT_JITTER = 5.0

_FREQUENCY_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([mMdD]?)$")


class Clock(Protocol):
    def now(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...

    def wait(self, event: threading.Event, seconds: float) -> bool: ...


class SystemClock:
    """Wall clock in epoch seconds."""

    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def wait(self, event: threading.Event, seconds: float) -> bool:
        """Block until ``event`` is set or ``seconds`` pass; True when set."""
        return event.wait(seconds) if seconds > 0 else event.is_set()


@dataclass(frozen=True)
class Cadence:
    interval: float  # seconds
    daily: bool = False


def parse_frequency(text: Optional[str]) -> Optional[Cadence]:
    """Parse a frequency string; ``None`` means scheduling is disabled."""
    raw = str(text or "").strip()
    if not raw:
        return None
    match = _FREQUENCY_RE.match(raw)
    if not match:
        logger.warning("Ignoring unparseable sync frequency %r", raw)
        return None
    amount = float(match.group(1))
    unit = match.group(2).lower()
    if amount <= 0:
        return None
    if unit == "d":
        return Cadence(interval=max(1, int(amount)) * DAY, daily=True)
    return Cadence(interval=amount * MINUTE)


def next_local_midnight(timestamp: float, days: int = 1, tz: Optional[tzinfo] = None) -> float:
    """Epoch seconds of the midnight ``days`` days after the start of ``timestamp``'s day."""
    current = datetime.fromtimestamp(timestamp, tz)
    start = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return (start + timedelta(days=max(1, days))).timestamp()


@dataclass(order=True)
class ScheduleEntry:
    next_run_at: float
    seq: int
    subject: str = field(compare=False)
    cadence: Cadence = field(compare=False)


class Scheduler:
    """Run ``job(subject)`` for each subject when it is due.

    Jobs run one at a time on the calling thread. A failing job is logged
    and rescheduled like a successful one.
    """

    def __init__(
        self,
        job: Callable[[str], Any],
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        jitter: float = DEFAULT_JITTER,
        tz: Optional[tzinfo] = None,
    ):
        self.job = job
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.jitter = jitter
        self.tz = tz
        self._heap: List[ScheduleEntry] = []
        self._live: Dict[str, ScheduleEntry] = {}
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, subject: str) -> bool:
        return subject in self._live

    def add(self, subject: str, frequency: Optional[str]) -> bool:
        """Schedule (or reschedule) a subject; a disabled frequency removes it."""
        cadence = parse_frequency(frequency)
        if cadence is None:
            self.remove(subject)
            return False
        now = self.clock.now()
        if cadence.daily:
            first = next_local_midnight(now, tz=self.tz)
        else:
            first = now + cadence.interval
        self._push(subject, first, cadence)
        logger.debug("Scheduled %s every %ss, first run at %.0f", subject, cadence.interval, first)
        return True

    def remove(self, subject: str) -> None:
        # Heap entries are dropped lazily when they surface.
        self._live.pop(subject, None)

    def clear(self) -> None:
        self._heap.clear()
        self._live.clear()

    def next_run_at(self) -> Optional[float]:
        self._discard_stale()
        return self._heap[0].next_run_at if self._heap else None

    def entries(self) -> List[ScheduleEntry]:
        return sorted(self._live.values())

    def run_pending(self) -> int:
        """Run every job that is due now; returns the number of jobs run."""
        ran = 0
        while True:
            self._discard_stale()
            if not self._heap or self._heap[0].next_run_at > self.clock.now():
                return ran
            entry = heapq.heappop(self._heap)
            self._execute(entry)
            ran += 1

    def run(self, stop_event: Optional[threading.Event] = None, max_runs: Optional[int] = None) -> int:
        """Loop until stopped, out of work, or ``max_runs`` jobs have run."""
        ran = 0
        while max_runs is None or ran < max_runs:
            if stop_event is not None and stop_event.is_set():
                break
            due = self.next_run_at()
            if due is None:
                break
            delay = max(0.0, due - self.clock.now())
            if delay > 0:
                if stop_event is not None:
                    if self.clock.wait(stop_event, delay):
                        break
                else:
                    self.clock.sleep(delay)
                continue
            entry = heapq.heappop(self._heap)
            self._execute(entry)
            ran += 1
        return ran

    def _execute(self, entry: ScheduleEntry) -> None:
        try:
            self.job(entry.subject)
        except Exception:
            logger.exception("Scheduled job for %s failed", entry.subject)
        # Removed or re-added while running: leave it as the job left it.
        if self._live.get(entry.subject) is entry:
            self._push(entry.subject, self._next_after_run(entry.cadence), entry.cadence)

    def _next_after_run(self, cadence: Cadence) -> float:
        now = self.clock.now()
        if cadence.daily:
            return next_local_midnight(now, days=int(cadence.interval // DAY), tz=self.tz)
        offset = self.rng.uniform(-self.jitter, self.jitter) if self.jitter else 0.0
        return max(now, now + cadence.interval + offset)

    def _push(self, subject: str, when: float, cadence: Cadence) -> None:
        entry = ScheduleEntry(next_run_at=when, seq=next(self._counter), subject=subject, cadence=cadence)
        self._live[subject] = entry
        heapq.heappush(self._heap, entry)

    def _discard_stale(self) -> None:
        while self._heap and self._live.get(self._heap[0].subject) is not self._heap[0]:
            heapq.heappop(self._heap)


__all__ = [
    "Cadence",
    "Clock",
    "ScheduleEntry",
    "Scheduler",
    "SystemClock",
    "next_local_midnight",
    "parse_frequency",
]
