"""Cross-process lock guarding the charge store file."""

from __future__ import annotations

import time
from pathlib import Path
from typing import IO

try:
    import fcntl  # Unix/Linux/macOS

    HAS_FCNTL = True
except ImportError:
    HAS_FCNTL = False
    try:
        import msvcrt  # Windows

        HAS_MSVCRT = True
    except ImportError:
        HAS_MSVCRT = False


class FileLock:
    """
    Exclusive advisory lock on a sidecar `.<name>.lock` file.

    Uses fcntl on Unix and msvcrt on Windows, polling until `timeout`.
    The sidecar file is left in place: unlinking it while another process
    waits on the old inode would let two writers hold "the" lock at once.

    Usage:
        with FileLock(path, timeout=5.0):
            data = json.loads(path.read_text())
            ...
            path.write_text(json.dumps(data))
    """

    def __init__(
        self,
        path: Path | str,
        *,
        timeout: float = 10.0,
        poll_interval: float = 0.01,
    ):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._lock_file: IO[str] | None = None
        self._lock_path = self.path.parent / f".{self.path.name}.lock"

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def acquire(self) -> None:
        """
        Acquire the lock, waiting up to `timeout` seconds.

        Raises:
            TimeoutError: If the lock is still held by someone else after `timeout`
            RuntimeError: If file locking is not available on this platform
        """
        if not HAS_FCNTL and not HAS_MSVCRT:
            raise RuntimeError("File locking not available on this platform.")

        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(self._lock_path, "a+")
        deadline = time.monotonic() + self.timeout

        while True:
            try:
                if HAS_FCNTL:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                else:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_NBLCK, 1)
            except OSError:
                if time.monotonic() >= deadline:
                    lock_file.close()
                    raise TimeoutError(
                        f"Could not acquire lock on {self.path} within {self.timeout}s"
                    )
                time.sleep(self.poll_interval)
                continue

            self._lock_file = lock_file
            return

    def release(self) -> None:
        if self._lock_file is None:
            return
        try:
            if HAS_FCNTL:
                fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)
            else:
                msvcrt.locking(self._lock_file.fileno(), msvcrt.LK_UNLCK, 1)
        finally:
            self._lock_file.close()
            self._lock_file = None

    @property
    def is_held(self) -> bool:
        return self._lock_file is not None


__all__ = ["FileLock"]
