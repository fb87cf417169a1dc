"""
Single-session locking: one mutating action at a time, per process and per host.
"""
import fcntl
import os
import threading
from pathlib import Path

from ..MODELS.errors import OperationInProgress

_process_lock = threading.Lock()


class SessionLock:
    """
    Non-blocking lock combining a process-wide mutex with an flock'd lock file.
    Use as a context manager; entering while another session holds it raises
    OperationInProgress.
    """
    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        self._fd = None

    def acquire(self) -> None:
        if not _process_lock.acquire(blocking=False):
            raise OperationInProgress("Another lifecycle action is already running in this process")
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                os.close(fd)
                raise OperationInProgress(f"Another lifecycle action holds {self.lock_path}") from None
            os.ftruncate(fd, 0)
            os.write(fd, str(os.getpid()).encode())
            self._fd = fd
        except BaseException:
            _process_lock.release()
            raise

    def release(self) -> None:
        if self._fd is not None:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
            self._fd = None
            _process_lock.release()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
