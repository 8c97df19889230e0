"""Run restic as a subprocess and stream its progress as typed events.

A ``BackupRun`` owns one child process and one reader thread. The child's
stderr is redirected into its stdout, so the reader sees a single line
source. Lines from each stream keep their own order, but the interleaving of
stdout and stderr lines is only as good as the child's buffering allows.

Events are delivered through a bounded queue. When the queue is full the
reader blocks until the consumer catches up; nothing is dropped. The queue is
closed after exactly one terminal event (see ``BackupMessage.is_terminal``)
has been enqueued, so consumers may iterate until closure::

    with BackupRun(command).start() as run:
        for event in run:
            render(event)
"""

import logging
import subprocess
import threading
import queue
from collections import deque
from enum import Enum
from typing import Deque, Iterator, List, Optional

from object_pool import ObjectPool
from restic_backup.command import ResticCommand
from restic_backup.errors import ResticError, classify_error
from restic_backup.messages import DONE, ERROR, INFO, BackupMessage, parse_line

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100
DEFAULT_TRANSCRIPT_LINES = 200

# Terminal event tags for failures the runner detects itself
LAUNCH_FAILURE = 'launch_failure'
WAIT_FAILURE = 'wait_failure'
EXIT_STATUS = 'exit_status'
CANCELLED = 'cancelled'

_CLOSED = object()
_PUT_POLL_SECONDS = 0.1


class RunState(Enum):
    NOT_STARTED = 'not_started'
    RUNNING = 'running'
    DRAINING = 'draining'
    TERMINATED = 'terminated'


def create_transcript_pool(max_retain: int = 8, min_retain: int = 2,
                           cleanup_interval: float = 300.0,
                           lines: int = DEFAULT_TRANSCRIPT_LINES) -> ObjectPool:
    """Pool of bounded deques that hold the tail of a run's raw output."""
    return ObjectPool(
        lambda: deque(maxlen=lines),
        max_retain=max_retain,
        min_retain=min_retain,
        cleanup_interval=cleanup_interval,
        reset=deque.clear,
    )


class BackupRun:
    """Handle for one streaming restic run.

    Args:
        command: Invocation to execute.
        queue_size: Capacity of the event queue.
        transcript_pool: Optional pool supplying the output tail buffer.
        popen: Process factory, ``subprocess.Popen`` by default.
    """

    def __init__(self, command: ResticCommand, queue_size: int = DEFAULT_QUEUE_SIZE,
                 transcript_pool: Optional[ObjectPool] = None, popen=subprocess.Popen):
        if queue_size < 2:
            raise ValueError("queue_size must be at least 2")
        self.command = command
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._transcript_pool = transcript_pool
        self._popen = popen

        self._lock = threading.Lock()
        self._state = RunState.NOT_STARTED
        self._process: Optional[subprocess.Popen] = None
        self._thread: Optional[threading.Thread] = None
        self._cancel_event = threading.Event()

        self.terminal_event: Optional[BackupMessage] = None
        self.returncode: Optional[int] = None
        self.output_tail = ''

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def start(self) -> 'BackupRun':
        """Spawn the child process and the reader thread."""
        with self._lock:
            if self._state is not RunState.NOT_STARTED:
                raise RuntimeError("BackupRun has already been started")

            if self._cancel_event.is_set():
                self._finish_without_process(CANCELLED, "Run cancelled before it started")
                return self

            logger.info(f"Starting restic {self.command.description or self.command.argv[1:2]}")
            try:
                self._process = self._popen(
                    self.command.argv,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    encoding='utf-8',
                    errors='replace',
                    bufsize=1,
                    **self.command.popen_kwargs()
                )
            except (OSError, ValueError) as e:
                logger.error(f"Could not start {self.command}: {e}")
                self._finish_without_process(LAUNCH_FAILURE, f"Failed to start command: {e}")
                return self

            self._state = RunState.RUNNING
            self._thread = threading.Thread(
                target=self._pump, name=f"restic-{self._process.pid}", daemon=True
            )
            self._thread.start()
        return self

    def cancel(self) -> None:
        """Terminate the child process.

        The run then ends with an ``error`` terminal event tagged
        ``cancelled``. Once cancelled the reader no longer waits for a slow
        consumer: if the queue is full, the oldest undelivered events are
        discarded.
        """
        self._cancel_event.set()
        with self._lock:
            process = self._process
        if process is not None and process.poll() is None:
            logger.info(f"Cancelling restic process {process.pid}")
            try:
                process.terminate()
            except OSError as e:
                logger.warning(f"Could not terminate restic process {process.pid}: {e}")

    def __enter__(self) -> 'BackupRun':
        if self._state is RunState.NOT_STARTED:
            self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._state is not RunState.TERMINATED:
            self.cancel()
        if self._thread is not None:
            self._thread.join(timeout=5)
        return False

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def events(self, timeout: Optional[float] = None) -> Iterator[BackupMessage]:
        """Yield events until the run's queue is closed.

        Raises:
            queue.Empty: No event arrived within ``timeout`` seconds.
        """
        while True:
            item = self._queue.get(timeout=timeout)
            if item is _CLOSED:
                # Leave the marker for any other consumer.
                try:
                    self._queue.put_nowait(_CLOSED)
                except queue.Full:
                    pass
                return
            yield item

    def __iter__(self) -> Iterator[BackupMessage]:
        return self.events()

    def wait(self, timeout: Optional[float] = None) -> Optional[BackupMessage]:
        """Consume the remaining events and return the terminal event."""
        for _ in self.events(timeout=timeout):
            pass
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        return self.terminal_event

    def drain(self, timeout: Optional[float] = None) -> List[BackupMessage]:
        """Consume and return the remaining events."""
        return list(self.events(timeout=timeout))

    def classify_failure(self) -> Optional[ResticError]:
        """Classify a failed run from its output; None if it did not fail."""
        terminal = self.terminal_event
        if terminal is None or not terminal.is_error:
            return None
        return classify_error(self.output_tail or terminal.message)

    # ------------------------------------------------------------------
    # Reader thread
    # ------------------------------------------------------------------

    def _acquire_transcript(self) -> Deque[str]:
        if self._transcript_pool is not None:
            return self._transcript_pool.acquire()
        return deque(maxlen=DEFAULT_TRANSCRIPT_LINES)

    def _emit(self, item) -> None:
        while True:
            try:
                self._queue.put(item, timeout=_PUT_POLL_SECONDS)
                return
            except queue.Full:
                if self._cancel_event.is_set():
                    try:
                        self._queue.get_nowait()
                    except queue.Empty:
                        pass

    def _record_terminal(self, message: BackupMessage) -> None:
        if self.terminal_event is None:
            self.terminal_event = message

    def _finish_without_process(self, failure: str, text: str) -> None:
        # Caller holds the lock.
        message = BackupMessage(message_type=ERROR, code=1, message=text, failure=failure)
        self._record_terminal(message)
        self.output_tail = text
        self._emit(message)
        self._state = RunState.TERMINATED
        self._emit(_CLOSED)

    def _pump(self) -> None:
        process = self._process
        transcript = self._acquire_transcript()
        wait_error: Optional[Exception] = None
        try:
            try:
                for raw in process.stdout:
                    line = raw.strip()
                    if not line:
                        continue
                    transcript.append(line)
                    message = parse_line(line)
                    if message.is_terminal:
                        if self.terminal_event is not None:
                            # A run ends once; later terminal records are passed on as text.
                            logger.warning(f"Ignoring terminal record after the first: {line}")
                            message = BackupMessage(message_type=INFO, message=line)
                        else:
                            self._record_terminal(message)
                    self._emit(message)
            except (OSError, ValueError) as e:
                logger.warning(f"Reading restic output failed: {e}")
            finally:
                process.stdout.close()

            self._state = RunState.DRAINING
            try:
                self.returncode = process.wait()
            except Exception as e:
                logger.error(f"Waiting for restic process {process.pid} failed: {e}")
                wait_error = e

        finally:
            self.output_tail = '\n'.join(transcript)
            if self.terminal_event is None:
                self._emit(self._synthesize_terminal(wait_error))
            if self._transcript_pool is not None:
                self._transcript_pool.release(transcript)
            self._state = RunState.TERMINATED
            self._emit(_CLOSED)
            logger.debug(
                f"restic process {process.pid} finished with status {self.returncode}"
            )

    def _synthesize_terminal(self, wait_error: Optional[Exception]) -> BackupMessage:
        if wait_error is not None:
            message = BackupMessage(message_type=ERROR, code=1, failure=WAIT_FAILURE,
                                    message=f"Failed to wait for command: {wait_error}")
        elif self.returncode != 0 and self._cancel_event.is_set():
            message = BackupMessage(message_type=ERROR, code=1, failure=CANCELLED,
                                    message="Run cancelled")
        elif self.returncode != 0:
            message = BackupMessage(message_type=ERROR, code=1, failure=EXIT_STATUS,
                                    message=f"Command failed: exit status {self.returncode}")
        else:
            message = BackupMessage(message_type=DONE, message="Command completed")
        self._record_terminal(message)
        return message
