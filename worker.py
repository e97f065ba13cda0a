"""
BackgroundWorker: best-effort queue for side effects that must not hold up a
request (category flag refresh, buyer/seller notifications).

Jobs run on one daemon thread in submission order. A failing job is logged
and dropped; nothing is retried and callers never wait on the result.
"""
import logging
import queue
import threading
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

Job = Tuple[str, Callable[..., Any], tuple, Dict[str, Any]]


class BackgroundWorker:
    def __init__(self, name: str = "background-worker", poll_interval: float = 0.2) -> None:
        self.name = name
        self.poll_interval = poll_interval
        self._queue: "queue.Queue[Job]" = queue.Queue()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, join: bool = True) -> None:
        self._stop_event.set()
        if join and self._thread is not None:
            self._thread.join()
        self._thread = None

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def submit(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self._queue.put((label, fn, args, kwargs))

    def publish(self, event: str, **payload: Any) -> None:
        """Queue a notification; delivery is a log line until a notifier exists."""
        self.submit(f"notify:{event}", _deliver_notification, event, payload)

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> int:
        """Run every queued job on the calling thread. Returns how many ran."""
        ran = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                return ran
            self._execute(job)
            ran += 1

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            self._execute(job)

    def _execute(self, job: Job) -> None:
        label, fn, args, kwargs = job
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.exception("Background job %s failed", label)
        finally:
            self._queue.task_done()


def _deliver_notification(event: str, payload: Dict[str, Any]) -> None:
    logger.info("Notification %s: %s", event, payload)
