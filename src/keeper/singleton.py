"""PID file guard that keeps a single master instance per PID file.

Ownership is expressed by an exclusive ``flock`` on the PID file, held for
the whole running lifetime of the owner. The file content is the owner's pid,
so that other processes can find out whom to signal.

A PID file that exists but is not locked by anybody is stale and carries no
meaning: a crashed owner loses its lock together with its descriptors.
"""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import signal
from typing import Optional

from keeper.exceptions import PidFileError, SingletonConflict
from keeper.utils.system import send_signal

logger = logging.getLogger(__name__)


class SingletonGuard:
    """Owns the PID file and its advisory lock."""

    def __init__(self, path: str, max_attempts: int = 3) -> None:
        if not path:
            raise PidFileError("PID file path is not configured")

        self.path = os.path.abspath(path)
        self.max_attempts = max_attempts

        self.fd: Optional[int] = None
        self.locked = False

    def __repr__(self) -> str:
        state = "locked" if self.locked else "unlocked"
        return f"<{self.__class__.__name__} {self.path} ({state})>"

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def ensure_singleton(self, evict: bool = False) -> None:
        """Acquire the PID file lock, or fail if a live instance holds it.

        With ``evict``, the holder is sent SIGTERM and this call *blocks*
        until it releases the lock. There is no timeout: an instance that
        ignores SIGTERM keeps the caller waiting forever.

        Raises:
            SingletonConflict: another instance holds the lock, and eviction
                was not requested or did not succeed within ``max_attempts``.
            PidFileError: the PID file cannot be created or opened.
        """
        if self.locked:
            return

        running_pid = None
        for attempt in range(1, self.max_attempts + 1):
            if not self._has_pid_file():
                # Nothing to check yet, claim the fresh file
                self._touch()
                if self._try_lock():
                    return
            elif self._try_lock():
                return

            running_pid = self.read_pid()
            if not evict:
                raise SingletonConflict(running_pid)

            logger.info(
                f"Evicting running instance (PID: {running_pid}), "
                f"attempt {attempt} of {self.max_attempts}"
            )
            if running_pid:
                send_signal(running_pid, signal.SIGTERM)

            self._wait_for_release()

        raise SingletonConflict(
            running_pid,
            f"Running instance (PID: {running_pid}) did not give up "
            f"{self.path} after {self.max_attempts} attempts",
        )

    def refresh_payload(self, pid: Optional[int] = None) -> None:
        """Replace the PID file content with ``pid`` (default: this process)"""
        if not self.locked:
            raise PidFileError(f"Cannot write {self.path} without holding its lock")

        pid = os.getpid() if pid is None else pid
        try:
            os.ftruncate(self.fd, 0)
            os.lseek(self.fd, 0, os.SEEK_SET)
            os.write(self.fd, str(pid).encode())
            os.fsync(self.fd)
        except OSError as exc:
            raise PidFileError(f"Cannot write PID file {self.path}: {exc}")

        logger.debug(f"Wrote PID {pid} to {self.path}")

    def release(self) -> None:
        """Unlock, close and delete the PID file, if this guard holds it"""
        if not self.locked:
            return

        try:
            fcntl.flock(self.fd, fcntl.LOCK_UN)
        finally:
            os.close(self.fd)
            self.fd = None
            self.locked = False

        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass

        logger.debug(f"Released {self.path}")

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def read_pid(self) -> Optional[int]:
        """Best-effort read of the PID file payload, without locking it"""
        try:
            with open(self.path, "r") as f:
                content = f.read(64).strip()
        except OSError:
            return None

        try:
            return int(content)
        except ValueError:
            return None

    def running_pid(self) -> Optional[int]:
        """Pid of the live instance holding the lock, or None.

        Probes the lock with a separate descriptor that is always closed
        again, so the probe never leaves this process holding the file.
        """
        if self.locked:
            return os.getpid()

        try:
            fd = os.open(self.path, os.O_RDWR)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PidFileError(f"Cannot open PID file {self.path}: {exc}")

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return self.read_pid()
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
            return None
        finally:
            os.close(fd)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _has_pid_file(self) -> bool:
        directory = os.path.dirname(self.path)

        if not os.path.isdir(directory):
            try:
                os.makedirs(directory, mode=0o755, exist_ok=True)
            except OSError as exc:
                raise PidFileError(f"Cannot create directory {directory}: {exc}")

            return False

        return os.path.isfile(self.path)

    def _touch(self) -> None:
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT, 0o644)
        except OSError as exc:
            raise PidFileError(f"Cannot create PID file {self.path}: {exc}")

        os.close(fd)

    def _open(self) -> int:
        try:
            return os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise PidFileError(f"Cannot open PID file {self.path}: {exc}")

    def _try_lock(self) -> bool:
        for _ in range(self.max_attempts):
            fd = self._open()
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as exc:
                os.close(fd)
                if exc.errno in (errno.EAGAIN, errno.EACCES):
                    return False
                raise PidFileError(f"Cannot lock PID file {self.path}: {exc}")

            if self._is_current(fd):
                self.fd = fd
                self.locked = True
                return True

            # `flock` locks the inode: the previous owner released and deleted
            #   the file after we opened it, so lock whatever is at the path now
            logger.debug(f"{self.path} was replaced while locking it, retrying")
            os.close(fd)

        return False

    def _is_current(self, fd: int) -> bool:
        """Whether ``fd`` still refers to the file found at ``path``"""
        try:
            on_disk = os.stat(self.path)
        except FileNotFoundError:
            return False

        opened = os.fstat(fd)
        return (opened.st_dev, opened.st_ino) == (on_disk.st_dev, on_disk.st_ino)

    def _wait_for_release(self) -> None:
        """Block until the current holder lets go of the lock"""
        logger.warning(
            f"Waiting for {self.path} to be released, this does not time out"
        )

        fd = self._open()
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
