import pytest

from lanekeeper.errors import LockContention
from lanekeeper.lock import ConcurrencyGuard


class TestConcurrencyGuard:
    def test_second_holder_is_refused(self, tmp_path):
        path = str(tmp_path / 'run' / 'lanekeeper.lock')
        first = ConcurrencyGuard(path)
        second = ConcurrencyGuard(path)
        with first:
            assert first.held
            with pytest.raises(LockContention):
                second.acquire()
            assert not second.held
        # Released on exit, so the next pass may proceed
        with second:
            assert second.held
        assert not second.held

    def test_released_on_error(self, tmp_path):
        path = str(tmp_path / 'lanekeeper.lock')
        with pytest.raises(RuntimeError):
            with ConcurrencyGuard(path):
                raise RuntimeError('pass blew up')
        with ConcurrencyGuard(path) as guard:
            assert guard.held

    def test_release_is_idempotent(self, tmp_path):
        guard = ConcurrencyGuard(str(tmp_path / 'lanekeeper.lock'))
        guard.release()
        guard.acquire()
        guard.release()
        guard.release()
