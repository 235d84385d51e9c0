import errno
import json
import os
import socket
from pathlib import Path
from typing import IO, Optional

from .state import now_iso

try:
    import fcntl
except ImportError:  # pragma: no cover - Windows fallback
    fcntl = None  # type: ignore[assignment]

try:
    import msvcrt
except ImportError:  # pragma: no cover - POSIX default
    msvcrt = None  # type: ignore[assignment]


class LoopLockError(Exception):
    """Raised when the working-tree lock fails unexpectedly."""


class LoopLockBusy(LoopLockError):
    """Raised when another loop already owns this working tree."""


class LoopLock:
    """Exclusive, non-blocking lock allowing one loop instance per working tree.

    The holder's pid/host are written into the lock file for diagnostics.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._file: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._file is not None

    def acquire(self) -> None:
        if self._file is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = self.path.open("a+", encoding="utf-8")
        try:
            if fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            elif msvcrt is not None:
                lock_file.seek(0)
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError as exc:
            lock_file.close()
            if exc.errno in (errno.EACCES, errno.EAGAIN) or msvcrt is not None:
                raise LoopLockBusy(
                    f"Another loop is already running in this working tree ({self.path})"
                ) from exc
            raise LoopLockError(f"Failed to acquire lock: {exc}") from exc
        lock_file.seek(0)
        lock_file.truncate()
        lock_file.write(
            json.dumps(
                {"pid": os.getpid(), "host": socket.gethostname(), "started_at": now_iso()}
            )
            + "\n"
        )
        lock_file.flush()
        self._file = lock_file

    def release(self) -> None:
        lock_file = self._file
        if lock_file is None:
            return
        try:
            if fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            elif msvcrt is not None:
                lock_file.seek(0)
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
        finally:
            lock_file.close()
            self._file = None

    def __enter__(self) -> "LoopLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
