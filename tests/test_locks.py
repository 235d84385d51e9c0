import json
from pathlib import Path

import pytest

from ralph_runner.locks import LoopLock, LoopLockBusy


def test_second_instance_fails_fast(tmp_path: Path) -> None:
    path = tmp_path / ".ralph" / "loop.lock"
    with LoopLock(path) as first:
        assert first.held
        info = json.loads(path.read_text(encoding="utf-8"))
        assert "pid" in info and "started_at" in info
        with pytest.raises(LoopLockBusy):
            LoopLock(path).acquire()
    assert not first.held


def test_lock_can_be_reacquired_after_release(tmp_path: Path) -> None:
    path = tmp_path / "loop.lock"
    lock = LoopLock(path)
    lock.acquire()
    lock.release()
    other = LoopLock(path)
    other.acquire()
    assert other.held
    other.release()
