"""
Action Queue module: bounded FIFO of remote commands drained by one worker.
"""
import queue
import threading
from typing import List, Optional, TYPE_CHECKING

from pm2_client.core.models import RemoteCommand
from pm2_client.errors import ExecError, QueueOverflowError
from pm2_client.utils import get_logger

if TYPE_CHECKING:
    from pm2_client.core.command_executor import Pm2CommandExecutor

logger = get_logger(__name__)

DEFAULT_MAX_QUEUE_SIZE = 10
DEFAULT_ACTION_DELAY_SEC = 0.5


class ActionQueue:
    """
    Receives remote commands, keeps at most ``max_size`` of them pending, and
    executes them one at a time with a fixed pause after each command.

    A single worker thread drains the queue. :meth:`start` may be called any
    number of times; it never creates a second worker. Overflowing commands
    are rejected (the newest is dropped, pending ones are kept).
    """

    def __init__(self, executor: 'Pm2CommandExecutor',
                 max_size: int = DEFAULT_MAX_QUEUE_SIZE,
                 delay: float = DEFAULT_ACTION_DELAY_SEC):
        """
        :param executor: Executor invoked for every dequeued command
        :param max_size: Maximum number of pending commands
        :param delay: Pause in seconds after each executed command
        :raises: ValueError if executor is None or max_size is not positive
        """
        if executor is None:
            raise ValueError("Pm2CommandExecutor instance is required for ActionQueue.")
        if max_size <= 0:
            raise ValueError("max_size must be positive.")

        self.executor = executor
        self.max_size = max_size
        self.delay = delay

        self._queue: queue.Queue[RemoteCommand] = queue.Queue(maxsize=max_size)
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self._closed = False

        logger.info(f"ActionQueue Config: Max Queue Size={self.max_size}, Delay={self.delay}s")

    # === PUBLIC METHODS ===

    @property
    def size(self) -> int:
        return self._queue.qsize()

    @property
    def is_draining(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def pending(self) -> List[RemoteCommand]:
        """Snapshot of the pending commands, head first."""
        with self._queue.mutex:
            return list(self._queue.queue)

    def enqueue(self, command: RemoteCommand) -> bool:
        """
        Adds a command at the tail of the queue.

        :param command: Command to add
        :type command: RemoteCommand
        :return: True if queued, False if the queue is full or stopped
        :rtype: bool
        """
        if self._closed:
            logger.warning(f"Agent is shutting down. Dropping action {command}.")
            return False
        try:
            self._put(command)
        except QueueOverflowError as e:
            logger.error(f"{e} Dropping action {command}.")
            return False
        logger.debug(f"Action queued: {command} (Queue size: {self.size}/{self.max_size})")
        return True

    def start(self) -> bool:
        """
        Starts the drain worker if it is not already running.

        :return: True if a worker was started by this call
        :rtype: bool
        """
        with self._lock:
            if self._closed:
                logger.debug("ActionQueue is stopped; not starting a worker.")
                return False
            if self._worker is not None and self._worker.is_alive():
                return False
            self._worker = threading.Thread(target=self._worker_loop, name="ActionQueueWorker", daemon=True)
            self._worker.start()
        logger.debug("Action queue worker started.")
        return True

    def stop(self):
        """
        Stops draining. No queued command is started after this call; a command
        already executing is abandoned, not awaited.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._stop_event.set()

        cleared_count = 0
        while True:
            try:
                self._queue.get_nowait()
                self._queue.task_done()
                cleared_count += 1
            except queue.Empty:
                break
        if cleared_count > 0:
            logger.warning(f"Cleared {cleared_count} pending actions.")
        logger.info("ActionQueue stopped.")

    # === WORKER ===

    def _put(self, command: RemoteCommand):
        try:
            self._queue.put(command, block=False)
        except queue.Full:
            raise QueueOverflowError(f"Action queue is full (max={self.max_size}). New actions cannot be added.")

    def _worker_loop(self):
        logger.debug("Action queue worker running.")
        while not self._stop_event.is_set():
            try:
                command = self._queue.get(block=True, timeout=0.5)
            except queue.Empty:
                continue
            try:
                if self._stop_event.is_set():
                    break
                self._execute(command)
            finally:
                self._queue.task_done()
            self._stop_event.wait(self.delay)
        logger.debug("Action queue worker stopping.")

    def _execute(self, command: RemoteCommand):
        try:
            self.executor.execute(command.action, command.target_id)
        except ExecError as e:
            logger.error(f"Error executing action {command.action} for PM2 ID {command.target_id}: "
                         f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error executing action {command.action} for PM2 ID {command.target_id}: {e}",
                         exc_info=True)
        else:
            logger.info(f"Action {command.action} for PM2 ID {command.target_id} completed.")
