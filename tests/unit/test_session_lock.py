import pytest

from nodefleet.MODELS.errors import OperationInProgress
from nodefleet.UTILS.session_lock import SessionLock


def test_overlapping_sessions_are_rejected(tmp_path):
    path = tmp_path / ".nodefleet.lock"
    with SessionLock(path):
        with pytest.raises(OperationInProgress):
            SessionLock(path).acquire()
    # Released on exit
    with SessionLock(path):
        assert path.exists()


def test_release_after_error(tmp_path):
    path = tmp_path / ".nodefleet.lock"
    with pytest.raises(ValueError):
        with SessionLock(path):
            raise ValueError("boom")
    lock = SessionLock(path)
    lock.acquire()
    lock.release()
