"""
Process-wide scheduler for periodic maintenance jobs.

Jobs are registered with an interval and fire once the injected clock has
passed their next run time. `run_pending()` is the whole scheduling step, so
tests drive it directly with a manual clock; `start()` only calls it from a
daemon thread every `tick_seconds`.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from database import now_utc

logger = logging.getLogger(__name__)


class Clock:
    """Source of the current naive-UTC time."""

    def now(self) -> datetime:
        return now_utc()


@dataclass
class ScheduledJob:
    name: str
    interval: timedelta
    fn: Callable[[], Any]
    next_run: datetime
    runs: int = 0
    failures: int = 0


class Scheduler:
    def __init__(self, clock: Optional[Clock] = None, tick_seconds: float = 1.0) -> None:
        self.clock = clock or Clock()
        self.tick_seconds = tick_seconds
        self.jobs: List[ScheduledJob] = []
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def every(self, seconds: float, name: str, fn: Callable[[], Any]) -> ScheduledJob:
        interval = timedelta(seconds=seconds)
        job = ScheduledJob(name=name, interval=interval, fn=fn, next_run=self.clock.now() + interval)
        with self._lock:
            self.jobs.append(job)
        return job

    def run_pending(self) -> List[str]:
        """Run every job whose next run time has passed; return their names."""
        now = self.clock.now()
        with self._lock:
            due = [job for job in self.jobs if job.next_run <= now]
        ran = []
        for job in due:
            try:
                result = job.fn()
                logger.debug("Job %s finished: %s", job.name, result)
            except Exception:
                job.failures += 1
                logger.exception("Scheduled job %s failed", job.name)
            job.runs += 1
            job.next_run = now + job.interval
            ran.append(job.name)
        return ran

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="scheduler", daemon=True)
        self._thread.start()

    def stop(self, join: bool = True) -> None:
        self._stop_event.set()
        if join and self._thread is not None:
            self._thread.join()
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.tick_seconds):
            self.run_pending()
