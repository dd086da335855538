"""Single-writer lock file.

The writer holds an exclusive ``flock`` on the lock file while it writes and
records its PID, host and acquisition time in the file. The kernel drops the
flock when the owning process exits, however it exits, so a lock that can be
acquired is free. Owner details left behind by a writer that died are only
reported, and the file itself is never unlinked.
"""

import fcntl
import json
import logging
import os
import socket
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from kodo.errors import IoFailureError, LockContentionError
from kodo.types import utc_now

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class StoreLock:
    """flock-backed lock file serializing writers to one store.

    Re-entrant for the handle that owns it: nested `acquire()` calls only bump
    a depth counter. Two handles in one process exclude each other like two
    processes do.
    """

    def __init__(
        self,
        path: Path,
        timeout: float = 5.0,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.path = Path(path)
        self.timeout = timeout
        self._sleep = sleep_fn
        self._depth = 0
        self._fd: Optional[int] = None
        self.reclaimed_from: Optional[Dict[str, Any]] = None  # owner left behind by a dead writer
        self._hostname = socket.gethostname()

    @property
    def held(self) -> bool:
        return self._depth > 0

    def read_owner(self) -> Optional[Dict[str, Any]]:
        """Return the recorded owner, or None if the lock file is absent or empty."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise IoFailureError(self.path, e) from e
        if not text.strip():
            return None
        try:
            owner = json.loads(text)
            if isinstance(owner, dict):
                return owner
        except json.JSONDecodeError:
            pass
        # Owner died between truncating and writing its details
        return {"pid": None, "host": None, "since": None}

    def _open(self) -> int:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return os.open(str(self.path), os.O_CREAT | os.O_RDWR, 0o600)
        except OSError as e:
            raise IoFailureError(self.path, e) from e

    def _try_lock(self, fd: int) -> bool:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except BlockingIOError:
            return False
        except OSError as e:
            raise IoFailureError(self.path, e) from e

    def _write_owner(self, fd: int) -> None:
        owner = {"pid": os.getpid(), "host": self._hostname, "since": utc_now().isoformat()}
        try:
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, json.dumps(owner).encode("utf-8"))
            os.fsync(fd)
        except OSError as e:
            raise IoFailureError(self.path, e) from e

    def acquire(self, timeout: Optional[float] = None) -> None:
        if self._depth > 0:
            self._depth += 1
            return

        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        fd = self._open()
        try:
            while not self._try_lock(fd):
                if time.monotonic() >= deadline:
                    owner = self.read_owner() or {}
                    raise LockContentionError(self.path, owner.get("pid"), owner.get("since"))
                self._sleep(_POLL_INTERVAL)
            previous = self.read_owner()
            self._write_owner(fd)
        except BaseException:
            os.close(fd)
            raise

        self._fd = fd
        self._depth = 1
        self.reclaimed_from = previous
        if previous is not None:
            logger.warning(
                "Reclaimed stale lock %s held by dead process %s since %s",
                self.path,
                previous.get("pid"),
                previous.get("since"),
            )
        logger.debug("Acquired store lock %s", self.path)

    def release(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth > 0:
            return
        fd, self._fd = self._fd, None
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as e:
            raise IoFailureError(self.path, e) from e
        finally:
            os.close(fd)
        logger.debug("Released store lock %s", self.path)

    def reclaim_stale(self) -> bool:
        """Clear owner details left by a dead writer. Returns True if there were any.

        Never waits: a lock held by a live process is left alone.
        """
        if self.held or self.read_owner() is None:
            return False
        try:
            self.acquire(timeout=0)
        except LockContentionError:
            return False
        self.release()
        return self.reclaimed_from is not None

    def __enter__(self) -> "StoreLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
