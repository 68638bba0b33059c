"""Thin wrappers around the POSIX process facilities Keeper relies on.

Everything here talks to the operating system directly: identity lookups,
privilege changes, signalling, daemonization and the process title.
"""

from __future__ import annotations

import grp
import logging
import os
import pwd
import sys
import time
from typing import Optional

import setproctitle

from keeper.exceptions import ConfigurationError, PrivilegeDropFailure

logger = logging.getLogger(__name__)


def resolve_user(name: str) -> int:
    """Return the numeric uid for a user name, failing fast if unknown"""
    try:
        return pwd.getpwnam(name).pw_uid
    except KeyError:
        raise ConfigurationError(f"Unknown user `{name}`")


def resolve_group(name: str) -> int:
    """Return the numeric gid for a group name, failing fast if unknown"""
    try:
        return grp.getgrnam(name).gr_gid
    except KeyError:
        raise ConfigurationError(f"Unknown group `{name}`")


def drop_privileges(uid: Optional[int] = None, gid: Optional[int] = None) -> None:
    """Switch the current process to ``gid`` and then ``uid``.

    The group has to change first: once the user id is dropped the process no
    longer has the permission to change its group.
    """
    if gid is not None:
        try:
            os.setgid(gid)
        except OSError as exc:
            raise PrivilegeDropFailure(f"Cannot switch to group id {gid}: {exc}")

    if uid is not None:
        try:
            os.setuid(uid)
        except OSError as exc:
            raise PrivilegeDropFailure(f"Cannot switch to user id {uid}: {exc}")


def pid_exists(pid: int) -> bool:
    """Check whether a process with ``pid`` is alive.

    A process we are not allowed to signal still exists.
    """
    if pid <= 0:
        return False

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True

    return True


def wait_for_exit(pid: int, timeout: float, interval: float = 0.1) -> bool:
    """Poll until ``pid`` has exited or ``timeout`` seconds have passed.

    Returns True when the process is gone.
    """
    deadline = time.monotonic() + timeout
    while pid_exists(pid):
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)

    return True


def send_signal(pid: int, signum: int) -> bool:
    """Send ``signum`` to ``pid``. Returns False if the process is already gone."""
    try:
        os.kill(pid, signum)
    except ProcessLookupError:
        logger.debug(f"Process {pid} is gone, cannot deliver signal {signum}")
        return False

    return True


def daemonize(working_dir: str = "/", umask: int = 0o022) -> None:
    """Detach the current process from its controlling terminal.

    Classic UNIX double fork: the first child becomes a session leader, the
    second one can never reacquire a terminal. Both parents exit immediately
    without running cleanup handlers, and standard streams are pointed at
    ``/dev/null``. Open file descriptors (including a held PID file lock) are
    inherited by the surviving grandchild.
    """
    if os.fork() > 0:
        os._exit(0)

    os.chdir(working_dir)
    os.setsid()
    os.umask(umask)

    if os.fork() > 0:
        os._exit(0)

    sys.stdout.flush()
    sys.stderr.flush()
    with open(os.devnull, "rb") as devnull_in, open(os.devnull, "ab") as devnull_out:
        os.dup2(devnull_in.fileno(), sys.stdin.fileno())
        os.dup2(devnull_out.fileno(), sys.stdout.fileno())
        os.dup2(devnull_out.fileno(), sys.stderr.fileno())

    logger.debug(f"Daemonized as process {os.getpid()}")


def set_process_title(title: str) -> None:
    setproctitle.setproctitle(title)
