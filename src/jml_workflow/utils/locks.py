"""Cross-process record lock using mkdir."""

import logging
import os
import shutil
import time
from pathlib import Path

logger = logging.getLogger(__name__)


class FileLock:
    """
    Atomic lock built on mkdir.

    - mkdir is atomic on local filesystems
    - the holder's PID is stored for stale lock detection
    - a lock whose PID no longer exists is reclaimed
    """

    def __init__(self, lock_dir: Path, name: str, timeout: float = 5.0, poll_interval: float = 0.01):
        self.lock_dir = lock_dir
        self.name = name
        self.lock_path = lock_dir / f"{name}.lock"
        self.pid_file = self.lock_path / "pid"
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._acquired = False

    def try_acquire(self) -> bool:
        """Attempt to acquire the lock once."""
        if self.lock_path.exists():
            if self._is_stale_lock():
                logger.info(f"Removing stale lock for {self.name}")
                self._remove_lock()
            else:
                return False

        try:
            self.lock_path.mkdir(parents=True, exist_ok=False)
            self.pid_file.write_text(str(os.getpid()))
            self._acquired = True
            return True
        except FileExistsError:
            logger.debug(f"Lock for {self.name} already exists (race condition)")
            return False

    def acquire(self) -> bool:
        """Spin until the lock is held or the timeout passes."""
        deadline = time.monotonic() + self.timeout
        while True:
            if self.try_acquire():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)

    def release(self) -> None:
        if self._acquired and self.lock_path.exists():
            self._remove_lock()
        self._acquired = False

    def _is_stale_lock(self) -> bool:
        if not self.pid_file.exists():
            # Holder may be between mkdir and writing its PID
            try:
                age = time.time() - self.lock_path.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > self.timeout

        try:
            pid = int(self.pid_file.read_text().strip())
            os.kill(pid, 0)
            return False
        except ValueError:
            logger.warning(f"Lock for {self.name} has invalid PID (stale)")
            return True
        except ProcessLookupError:
            logger.warning(f"Lock for {self.name} held by dead PID (stale)")
            return True
        except PermissionError:
            # Process exists under another user
            return False
        except FileNotFoundError:
            return False

    def _remove_lock(self) -> None:
        if self.lock_path.exists():
            try:
                shutil.rmtree(self.lock_path)
            except OSError as e:
                logger.warning(f"Failed to remove lock directory {self.lock_path}: {e}")

    def __enter__(self):
        if not self.acquire():
            raise TimeoutError(f"Could not acquire lock for {self.name} within {self.timeout}s")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
