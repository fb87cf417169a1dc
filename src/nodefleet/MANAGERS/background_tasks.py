"""
Detached tasks that run after an action has already returned.
"""
import logging
import threading
from typing import Callable, List

logger = logging.getLogger(__name__)


class DetachedTaskScheduler:
    """
    Runs callables on daemon timers. Results are never surfaced to the caller
    that scheduled them; failures are logged and dropped.
    """
    def __init__(self):
        self._timers: List[threading.Timer] = []
        self._lock = threading.Lock()

    def schedule(self, delay: float, name: str, task: Callable[[], None]) -> threading.Timer:
        """
        Runs task after delay seconds on a daemon thread.

        :param delay: Seconds to wait.
        :param name: Label used in log messages.
        :param task: The work to do.
        :return: The started timer.
        """
        def run():
            try:
                task()
            except Exception as e:
                logger.warning("Detached task %s failed: %s", name, e)
            finally:
                with self._lock:
                    if timer in self._timers:
                        self._timers.remove(timer)

        timer = threading.Timer(delay, run)
        timer.daemon = True
        timer.name = f"nodefleet-{name}"
        with self._lock:
            self._timers.append(timer)
        timer.start()
        logger.debug("Scheduled %s in %.1fs", name, delay)
        return timer

    def pending(self) -> int:
        with self._lock:
            return len(self._timers)

    def cancel_all(self) -> None:
        with self._lock:
            timers, self._timers = self._timers, []
        for timer in timers:
            timer.cancel()

    def join(self, timeout: float = None) -> None:
        """Waits for scheduled tasks; the CLI calls this before exiting."""
        with self._lock:
            timers = list(self._timers)
        for timer in timers:
            timer.join(timeout)


class ImmediateTaskScheduler(DetachedTaskScheduler):
    """
    Runs tasks synchronously, ignoring the delay.
    """
    def schedule(self, delay: float, name: str, task: Callable[[], None]):
        try:
            task()
        except Exception as e:
            logger.warning("Detached task %s failed: %s", name, e)
        return None
