from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

"""Deferred read-back scheduling.

After a financial survey row is written the spreadsheet recalculates a few
formula columns. The reconciler asks this scheduler to run the read-back
after a fixed delay on a daemon timer thread; the HTTP response does not
wait for it and failures only reach the log.
"""

__all__ = [
    "DEFAULT_READBACK_DELAY",
    "ReadbackScheduler",
]

DEFAULT_READBACK_DELAY = 3.0

logger = logging.getLogger(__name__)


class ReadbackScheduler:
    def __init__(
        self,
        delay: float = DEFAULT_READBACK_DELAY,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        self.delay = delay
        self._timer_factory = timer_factory
        self._pending: set[threading.Timer] = set()
        self._lock = threading.Lock()

    def schedule(self, fn: Callable[..., Any], *args: Any) -> threading.Timer:
        timer = self._timer_factory(self.delay, self._run, args=(fn, *args))
        timer.daemon = True
        with self._lock:
            self._pending.add(timer)
        timer.start()
        return timer

    def _run(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception(f"read-back failed for {args!r}")
        finally:
            with self._lock:
                self._pending.discard(threading.current_thread())  # type: ignore[arg-type]

    def join(self, timeout: float | None = None) -> None:
        """Wait for scheduled read-backs (CLI runs exit right after the batch)."""
        with self._lock:
            pending = list(self._pending)
        for timer in pending:
            timer.join(timeout)

    def cancel_all(self) -> int:
        """Cancel timers that have not fired yet (used on shutdown)."""
        with self._lock:
            pending = list(self._pending)
            self._pending.clear()
        for timer in pending:
            timer.cancel()
        return len(pending)
