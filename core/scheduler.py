"""
Periodic background tasks with an explicit start/stop lifecycle.

Each task runs its callable every `interval_seconds` on a daemon thread,
backing off exponentially (capped) after consecutive failures. Tests call
run_once() directly instead of waiting on the interval.
"""
import logging
import threading

logger = logging.getLogger('errandbit.scheduler')


class PeriodicTask:
    def __init__(self, name, fn, interval_seconds, max_backoff_seconds=600, run_immediately=False):
        self.name = name
        self._fn = fn
        self.interval = interval_seconds
        self.max_backoff = max(max_backoff_seconds, interval_seconds)
        self.run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread = None
        self.consecutive_errors = 0
        self.runs = 0
        self.last_error = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self):
        """Run one cycle synchronously. Exceptions propagate to the caller."""
        result = self._fn()
        self.runs += 1
        return result

    def next_delay(self) -> float:
        if not self.consecutive_errors:
            return self.interval
        return min(self.interval * (2 ** self.consecutive_errors), self.max_backoff)

    def _loop(self):
        if self.run_immediately:
            self._guarded_run()
        while not self._stop.is_set():
            if self._stop.wait(timeout=self.next_delay()):
                break  # stop requested during sleep
            self._guarded_run()

    def _guarded_run(self):
        try:
            self.run_once()
            self.consecutive_errors = 0
            self.last_error = None
        except Exception as e:
            self.consecutive_errors += 1
            self.last_error = str(e)
            logger.error("%s failed (consecutive=%d): %s", self.name, self.consecutive_errors, e)

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
        self._thread.start()
        logger.info("Started %s (interval %.0fs)", self.name, self.interval)

    def stop(self, timeout=5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Stopped %s", self.name)


class Scheduler:
    """Owns a set of PeriodicTasks so the app can start and stop them together."""

    def __init__(self):
        self._tasks = {}

    def add(self, task: PeriodicTask) -> PeriodicTask:
        self._tasks[task.name] = task
        return task

    def get(self, name) -> PeriodicTask:
        return self._tasks[name]

    def start(self):
        for task in self._tasks.values():
            task.start()

    def stop(self):
        for task in self._tasks.values():
            task.stop()

    def status(self) -> dict:
        return {
            name: {
                "running": task.running,
                "runs": task.runs,
                "consecutive_errors": task.consecutive_errors,
                "last_error": task.last_error,
            }
            for name, task in self._tasks.items()
        }
