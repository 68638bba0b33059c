"""
Custom Keeper exception classes
"""

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class KeeperException(Exception):
    """Base class for all Exceptions raised within Keeper"""

    # Process exit status a command line front-end should use
    exit_code = 1

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args)

        self.extra_info = kwargs.get("extra_info", None)

    def __reduce__(self) -> tuple[Any, tuple[Any]]:
        return (self.__class__, (self.args[0],))


class ConfigurationError(KeeperException):
    """Improper Configuration encountered like:
    * Unknown user or group name
    * A bootstrap entry that does not resolve to a worker class
    * A missing configuration file
    """


class InvalidOperationError(KeeperException):
    """Operation being performed is not permitted in the current state"""


class PidFileError(KeeperException):
    """The PID file could not be created, opened or locked"""


class SingletonConflict(KeeperException):
    """Another live instance holds the lock on the PID file.

    The conflicting process id is available as ``pid``.
    """

    exit_code = 2

    def __init__(self, pid: Optional[int], *args: Any, **kwargs: Any) -> None:
        self.pid = pid
        message = args[0] if args else f"Have running instance (PID: {pid})"

        super().__init__(message, **kwargs)

    def __reduce__(self) -> tuple[Any, tuple[Any, ...]]:
        return (self.__class__, (self.pid, self.args[0]))


class AlreadyRunning(SingletonConflict):
    """Raised by ``Supervisor.start`` when a live instance could not be replaced"""


class PrivilegeDropFailure(KeeperException):
    """Switching a child process to the configured user or group failed"""
