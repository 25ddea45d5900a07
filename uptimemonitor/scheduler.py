"""Task scheduler for fixed-rate probes and cron-style report jobs."""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

from croniter import croniter

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


class SchedulerError(Exception):
    """Raised when a task cannot be scheduled."""

    pass


class _ScheduledTask:
    """A registered task with its own timer thread."""

    def __init__(self, task_id: str, func: Callable[[], object], next_delay: Callable[[], float]) -> None:
        self.task_id = task_id
        self.func = func
        self.next_delay = next_delay
        self.stop_event = threading.Event()
        self.thread: threading.Thread | None = None


class Scheduler:
    """Runs registered tasks on their schedules using a shared worker pool.

    Each task has a timer thread that only decides *when* the task is due;
    the task itself runs on the worker pool. Recurring tasks are fixed-rate:
    a slow run does not delay the next one, so runs of the same task may
    overlap.

    Example:
        scheduler = Scheduler()
        scheduler.schedule_recurring("site:example", recorder.probe, 60)
        scheduler.schedule_cron("report:weekly", job, "0 1 * * 1")
        # ... later ...
        scheduler.shutdown()
    """

    def __init__(self, max_workers: int | None = None) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or DEFAULT_MAX_WORKERS,
            thread_name_prefix="scheduler-worker",
        )
        self._tasks: dict[str, _ScheduledTask] = {}
        self._lock = threading.Lock()
        self._shutdown = False

    @property
    def task_ids(self) -> list[str]:
        with self._lock:
            return list(self._tasks)

    def schedule_recurring(
        self,
        task_id: str,
        func: Callable[[], object],
        interval_seconds: float,
        initial_delay: float = 0,
    ) -> None:
        """Run a task every ``interval_seconds``, starting after ``initial_delay``.

        Raises:
            SchedulerError: If the interval is not positive, the id is taken
                or the scheduler was shut down.
        """
        if interval_seconds <= 0:
            raise SchedulerError(f"Interval for '{task_id}' must be positive (got {interval_seconds})")

        next_run = time.monotonic() + initial_delay

        def next_delay() -> float:
            nonlocal next_run
            delay = next_run - time.monotonic()
            next_run += interval_seconds
            return delay

        self._register(_ScheduledTask(task_id, func, next_delay))
        logger.info("Scheduled '%s' every %ss", task_id, interval_seconds)

    def schedule_cron(self, task_id: str, func: Callable[[], object], expression: str) -> None:
        """Run a task whenever a cron expression (in UTC) fires.

        Raises:
            SchedulerError: If the expression is invalid, the id is taken or
                the scheduler was shut down.
        """
        if not croniter.is_valid(expression):
            raise SchedulerError(f"Invalid cron expression for '{task_id}': {expression}")

        schedule = croniter(expression, datetime.now(UTC))

        def next_delay() -> float:
            next_run = schedule.get_next(datetime)
            return (next_run - datetime.now(UTC)).total_seconds()

        self._register(_ScheduledTask(task_id, func, next_delay))
        logger.info("Scheduled '%s' with cron '%s'", task_id, expression)

    def cancel(self, task_id: str) -> bool:
        """Stop scheduling a task. Runs already in progress are not interrupted."""
        with self._lock:
            task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        task.stop_event.set()
        logger.info("Cancelled '%s'", task_id)
        return True

    def shutdown(self, wait: bool = True, timeout: float = 10.0) -> None:
        """Stop all timers, then wait for in-flight runs to finish.

        No new runs start once this is called.
        """
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
            tasks = list(self._tasks.values())
            self._tasks.clear()

        logger.info("Stopping scheduler...")
        for task in tasks:
            task.stop_event.set()
        for task in tasks:
            if task.thread is not None:
                task.thread.join(timeout=timeout)
                if task.thread.is_alive():
                    logger.warning("Timer for '%s' did not stop within timeout", task.task_id)

        self._executor.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def _register(self, task: _ScheduledTask) -> None:
        with self._lock:
            if self._shutdown:
                raise SchedulerError(f"Cannot schedule '{task.task_id}': scheduler is shut down")
            if task.task_id in self._tasks:
                raise SchedulerError(f"Task '{task.task_id}' is already scheduled")
            self._tasks[task.task_id] = task
            task.thread = threading.Thread(
                target=self._run_timer,
                args=(task,),
                daemon=True,
                name=f"timer-{task.task_id}",
            )
            task.thread.start()

    def _run_timer(self, task: _ScheduledTask) -> None:
        """Timer loop - runs in the task's own thread."""
        while not task.stop_event.is_set():
            delay = task.next_delay()
            if delay > 0 and task.stop_event.wait(timeout=delay):
                break
            try:
                self._executor.submit(self._run_task, task)
            except RuntimeError:
                # Executor already shut down.
                break

    def _run_task(self, task: _ScheduledTask) -> None:
        try:
            task.func()
        except Exception as e:
            logger.exception("Task '%s' failed: %s", task.task_id, e)
