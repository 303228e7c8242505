from __future__ import annotations

import threading

from sheet_migration.services.readback import DEFAULT_READBACK_DELAY, ReadbackScheduler


class RecordingTimer:
    created: list["RecordingTimer"] = []

    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False
        RecordingTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def join(self, timeout=None):
        return None

    def fire(self):
        self.function(*self.args)


def test_schedule_creates_daemon_timer_with_delay():
    RecordingTimer.created.clear()
    scheduler = ReadbackScheduler(delay=2.5, timer_factory=RecordingTimer)
    calls = []
    timer = scheduler.schedule(lambda *a: calls.append(a), 7, "FS-1")

    assert timer.interval == 2.5
    assert timer.daemon is True
    assert timer.started is True
    assert calls == []
    timer.fire()
    assert calls == [(7, "FS-1")]


def test_default_delay():
    assert ReadbackScheduler().delay == DEFAULT_READBACK_DELAY == 3.0


def test_failures_are_contained():
    scheduler = ReadbackScheduler(delay=0, timer_factory=RecordingTimer)

    def boom(*_):
        raise RuntimeError("sheet unavailable")

    timer = scheduler.schedule(boom, 1, "FS-1")
    timer.fire()  # 例外は外へ出ない


def test_cancel_all_cancels_pending():
    scheduler = ReadbackScheduler(delay=10, timer_factory=RecordingTimer)
    t1 = scheduler.schedule(lambda: None)
    t2 = scheduler.schedule(lambda: None)
    assert scheduler.cancel_all() == 2
    assert t1.cancelled and t2.cancelled
    assert scheduler.cancel_all() == 0


def test_real_timer_runs_in_background():
    done = threading.Event()
    scheduler = ReadbackScheduler(delay=0.01)
    scheduler.schedule(done.set)
    scheduler.join(2)
    assert done.wait(2)
