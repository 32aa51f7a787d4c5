"""
Timer helpers shared by the connection manager.
"""
import threading
from typing import Callable, Optional

from pm2_client.utils.logger import get_logger

logger = get_logger(__name__)


class RepeatingTimer(threading.Thread):
    """
    Daemon thread calling ``function`` every ``interval`` seconds until cancelled.

    The first call happens one interval after ``start()``. Exceptions raised by
    ``function`` are logged and do not stop the timer.
    """

    def __init__(self, interval: float, function: Callable[[], None], name: Optional[str] = None):
        super().__init__(name=name or "RepeatingTimer", daemon=True)
        self.interval = interval
        self.function = function
        self._finished = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._finished.is_set()

    def cancel(self, join_timeout: Optional[float] = None):
        """
        Stop the timer. A tick already running is allowed to finish.

        :param join_timeout: If given, wait up to this long for the thread to exit.
                             Ignored when called from the timer thread itself.
        :type join_timeout: Optional[float]
        """
        self._finished.set()
        if join_timeout is not None and self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=join_timeout)
            if self.is_alive():
                logger.warning(f"Timer thread {self.name} did not stop within {join_timeout}s.")

    def run(self):
        while not self._finished.wait(self.interval):
            try:
                self.function()
            except Exception as e:
                logger.error(f"Error in timer {self.name}: {e}", exc_info=True)
