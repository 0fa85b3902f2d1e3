"""Tests for the heap scheduler."""

from __future__ import annotations

import random
import threading
from datetime import datetime, timezone
from typing import List

import pytest

from addonsync.scheduler import DAY, MINUTE, Cadence, Scheduler, next_local_midnight, parse_frequency

# 2026-03-04 10:30:00 UTC
NOON_ISH = datetime(2026, 3, 4, 10, 30, tzinfo=timezone.utc).timestamp()
MIDNIGHT_AFTER = datetime(2026, 3, 5, tzinfo=timezone.utc).timestamp()


class FakeClock:
    def __init__(self, start: float = NOON_ISH):
        self.current = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds

    def wait(self, event: threading.Event, seconds: float) -> bool:
        self.sleeps.append(seconds)
        self.current += seconds
        return event.is_set()


def _scheduler(job, clock=None, jitter=0.0) -> Scheduler:
    return Scheduler(job, clock=clock or FakeClock(), rng=random.Random(7), jitter=jitter, tz=timezone.utc)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("5m", Cadence(5 * MINUTE)),
        ("90", Cadence(90 * MINUTE)),
        ("1d", Cadence(DAY, daily=True)),
        ("3D", Cadence(3 * DAY, daily=True)),
        ("0.5d", Cadence(DAY, daily=True)),
    ],
)
def test_parse_frequency(text, expected):
    assert parse_frequency(text) == expected


@pytest.mark.parametrize("text", [None, "", "0", "0m", "soon", "-5m"])
def test_parse_frequency_disabled(text):
    assert parse_frequency(text) is None


def test_next_local_midnight():
    assert next_local_midnight(NOON_ISH, tz=timezone.utc) == MIDNIGHT_AFTER
    assert next_local_midnight(NOON_ISH, days=2, tz=timezone.utc) == MIDNIGHT_AFTER + DAY
    assert next_local_midnight(MIDNIGHT_AFTER, tz=timezone.utc) == MIDNIGHT_AFTER + DAY


def test_first_run_times():
    clock = FakeClock()
    scheduler = _scheduler(lambda s: None, clock)

    scheduler.add("minutes", "5m")
    scheduler.add("daily", "2d")

    runs = {e.subject: e.next_run_at for e in scheduler.entries()}
    assert runs["minutes"] == NOON_ISH + 5 * MINUTE
    assert runs["daily"] == MIDNIGHT_AFTER


def test_disabled_frequency_removes_subject():
    scheduler = _scheduler(lambda s: None)
    assert scheduler.add("acct", "5m") is True
    assert scheduler.add("acct", "0") is False
    assert "acct" not in scheduler
    assert scheduler.next_run_at() is None


def test_run_pending_runs_only_due_jobs():
    clock = FakeClock()
    ran: List[str] = []
    scheduler = _scheduler(ran.append, clock)
    scheduler.add("fast", "1m")
    scheduler.add("slow", "10m")

    assert scheduler.run_pending() == 0

    clock.current += 2 * MINUTE
    assert scheduler.run_pending() == 1
    assert ran == ["fast"]
    assert scheduler.next_run_at() == clock.current + MINUTE


def test_minute_jitter_stays_within_bounds():
    clock = FakeClock()
    scheduler = Scheduler(lambda s: None, clock=clock, rng=random.Random(1), jitter=5.0)
    scheduler.add("acct", "1m")

    for _ in range(20):
        clock.current = scheduler.next_run_at()
        scheduler.run_pending()
        delta = scheduler.next_run_at() - clock.current
        assert MINUTE - 5.0 <= delta <= MINUTE + 5.0


def test_daily_cadence_reschedules_to_midnight():
    clock = FakeClock()
    scheduler = _scheduler(lambda s: None, clock)
    scheduler.add("acct", "2d")

    clock.current = MIDNIGHT_AFTER + 30
    scheduler.run_pending()

    assert scheduler.next_run_at() == MIDNIGHT_AFTER + 2 * DAY


def test_failing_job_is_rescheduled():
    clock = FakeClock()
    calls: List[str] = []

    def job(subject):
        calls.append(subject)
        raise RuntimeError("remote down")

    scheduler = _scheduler(job, clock)
    scheduler.add("acct", "1m")

    assert scheduler.run(max_runs=3) == 3
    assert calls == ["acct"] * 3
    assert "acct" in scheduler


def test_remove_and_readd_replace_the_pending_entry():
    clock = FakeClock()
    ran: List[str] = []
    scheduler = _scheduler(ran.append, clock)
    scheduler.add("acct", "1m")
    scheduler.add("acct", "10m")

    assert len(scheduler) == 1
    assert scheduler.next_run_at() == NOON_ISH + 10 * MINUTE

    scheduler.remove("acct")
    clock.current += DAY
    assert scheduler.run_pending() == 0
    assert ran == []


def test_job_removing_itself_is_not_rescheduled():
    clock = FakeClock()
    scheduler = None

    def job(subject):
        scheduler.remove(subject)

    scheduler = _scheduler(job, clock)
    scheduler.add("acct", "1m")

    assert scheduler.run() == 1
    assert len(scheduler) == 0


def test_run_sleeps_until_due_and_orders_by_time():
    clock = FakeClock()
    ran: List[str] = []
    scheduler = _scheduler(ran.append, clock)
    scheduler.add("b", "3m")
    scheduler.add("a", "2m")

    assert scheduler.run(max_runs=2) == 2

    assert ran == ["a", "b"]
    assert clock.sleeps == [2 * MINUTE, MINUTE]


def test_run_stops_when_event_is_set():
    stop = threading.Event()
    stop.set()
    scheduler = _scheduler(lambda s: None)
    scheduler.add("acct", "1m")

    assert scheduler.run(stop_event=stop) == 0


def test_run_with_stop_event_waits_on_the_clock():
    stop = threading.Event()
    clock = FakeClock()
    ran: List[str] = []

    def job(subject: str) -> None:
        ran.append(subject)
        if len(ran) == 2:
            stop.set()

    scheduler = _scheduler(job, clock)
    scheduler.add("acct", "5m")

    assert scheduler.run(stop_event=stop) == 2
    assert ran == ["acct", "acct"]
    assert clock.sleeps == [5 * MINUTE, 5 * MINUTE]
    assert clock.current == NOON_ISH + 10 * MINUTE
