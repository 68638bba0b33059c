__version__ = "0.1.0"

from .exceptions import (
    AlreadyRunning,
    ConfigurationError,
    KeeperException,
    PidFileError,
    PrivilegeDropFailure,
    SingletonConflict,
)
from .process import BaseWorker, WorkerProcess, WorkerProcessHandle
from .registry import ChildRegistry
from .singleton import SingletonGuard
from .supervisor import Supervisor
from .utils import get_version

__all__ = [
    "AlreadyRunning",
    "BaseWorker",
    "ChildRegistry",
    "ConfigurationError",
    "get_version",
    "KeeperException",
    "PidFileError",
    "PrivilegeDropFailure",
    "SingletonConflict",
    "SingletonGuard",
    "Supervisor",
    "WorkerProcess",
    "WorkerProcessHandle",
]
