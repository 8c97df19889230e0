"""Periodic background tasks.

Each registered task gets its own daemon thread that optionally runs the task
once at startup and then once per interval. Loops are independent: an
exception raised by one task is logged and the loop carries on.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from locks import ReadWriteLock

logger = logging.getLogger(__name__)


class Task(ABC):
    """A job run by the TaskScheduler."""

    @property
    @abstractmethod
    def key(self) -> str:
        """Unique name of the task."""

    @property
    @abstractmethod
    def interval(self) -> float:
        """Seconds between two runs."""

    @property
    def execute_immediately(self) -> bool:
        """Whether to run once as soon as the scheduler starts."""
        return False

    @abstractmethod
    def run(self) -> None:
        """Run the task once."""


class PeriodicTask(Task):
    """Task wrapping a plain callable."""

    def __init__(self, key: str, interval: float, func: Callable[[], None],
                 execute_immediately: bool = False):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._key = key
        self._interval = interval
        self._func = func
        self._execute_immediately = execute_immediately

    @property
    def key(self) -> str:
        return self._key

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def execute_immediately(self) -> bool:
        return self._execute_immediately

    def run(self) -> None:
        self._func()


class TaskScheduler:
    """Registry of periodic tasks and their run loops."""

    def __init__(self):
        self._lock = ReadWriteLock()
        self._tasks: Dict[str, Task] = {}
        self._stop_events: Dict[str, threading.Event] = {}
        self._threads: Dict[str, threading.Thread] = {}

    def add_task(self, task: Task) -> None:
        """Register a task, replacing any task with the same key."""
        with self._lock.write_locked():
            self._tasks[task.key] = task
        logger.debug(f"Registered task {task.key} (every {task.interval}s)")

    def remove_task(self, key: str) -> None:
        """Unregister a task and stop its loop if it is running."""
        with self._lock.write_locked():
            self._tasks.pop(key, None)
            stop_event = self._stop_events.pop(key, None)
            self._threads.pop(key, None)
        if stop_event is not None:
            stop_event.set()

    def tasks(self) -> List[Task]:
        with self._lock.read_locked():
            return list(self._tasks.values())

    def for_each_task(self, run_loop: Callable[[Task], None]) -> List[threading.Thread]:
        """Start ``run_loop(task)`` on its own daemon thread for every task."""
        threads = []
        with self._lock.read_locked():
            for task in self._tasks.values():
                thread = threading.Thread(target=run_loop, args=(task,),
                                          name=f"task-{task.key}", daemon=True)
                thread.start()
                threads.append(thread)
        return threads

    def start(self) -> None:
        """Start the periodic loop of every registered task not yet running."""
        with self._lock.write_locked():
            for key, task in self._tasks.items():
                if key in self._threads and self._threads[key].is_alive():
                    continue
                stop_event = threading.Event()
                thread = threading.Thread(target=self._run_loop, args=(task, stop_event),
                                          name=f"task-{key}", daemon=True)
                self._stop_events[key] = stop_event
                self._threads[key] = thread
                thread.start()
                logger.info(f"Started task {key}")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop every running loop and wait for the threads to finish."""
        with self._lock.write_locked():
            stop_events = list(self._stop_events.values())
            threads = list(self._threads.values())
            self._stop_events.clear()
            self._threads.clear()
        for stop_event in stop_events:
            stop_event.set()
        for thread in threads:
            thread.join(timeout=timeout)

    def _run_loop(self, task: Task, stop_event: threading.Event) -> None:
        if task.execute_immediately:
            self._run_once(task)
        while not stop_event.wait(task.interval):
            self._run_once(task)

    @staticmethod
    def _run_once(task: Task) -> None:
        logger.debug(f"[{task.key}] running task")
        try:
            task.run()
        except Exception:
            logger.exception(f"[{task.key}] task failed")
