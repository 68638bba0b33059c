"""Worker processes managed by a Keeper supervisor.

A worker is split in two halves:

- ``BaseWorker`` is what applications subclass. It carries the behavior of the
  child process in ``run_process`` and nothing else.
- ``WorkerProcessHandle`` is the supervisor's bookkeeping for one spawned OS
  process. It owns spawning, privilege dropping, signalling and reaping, and
  is not meant to be customized.

Usage:
    class Mailer(BaseWorker):
        def run_process(self, process):
            while True:
                send_pending_mail(self.container)
                time.sleep(1)

    supervisor.set_bootstrap([Mailer, "my_app.workers.Indexer"])
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing
import os
import signal
from abc import ABC, abstractmethod
from multiprocessing.connection import Connection
from typing import TYPE_CHECKING, Any, Optional, Type

from keeper.exceptions import InvalidOperationError, PrivilegeDropFailure
from keeper.utils import fqn
from keeper.utils.system import drop_privileges

if TYPE_CHECKING:
    from keeper.supervisor import Supervisor

logger = logging.getLogger(__name__)

# Dispositions the master installs for itself; children must not inherit them
_MASTER_SIGNALS = (
    signal.SIGTERM,
    signal.SIGINT,
    signal.SIGCHLD,
    signal.SIGUSR1,
    signal.SIGUSR2,
)


class WorkerProcess:
    """Child-side view of a worker process, handed to ``run_process``.

    Attributes:
        pid: OS process id of the child.
        name: Process name, derived from the worker class.
        pipe: Child end of the duplex pipe shared with the master.
        container: Dependency container, shared with the master unmodified.
        loop: Event loop watching ``pipe`` when the worker enables async I/O,
            None otherwise.
    """

    def __init__(
        self,
        name: str,
        pipe: Connection,
        container: Any,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.pid = os.getpid()
        self.name = name
        self.pipe = pipe
        self.container = container
        self.loop = loop

    def __repr__(self) -> str:
        return f"<WorkerProcess {self.name} (PID {self.pid})>"


class BaseWorker(ABC):
    """Base class for the behavior of a supervised child process.

    Subclasses implement ``run_process``. Setting ``async_io`` to True makes
    the child run an asyncio event loop that calls ``io_event`` whenever the
    master writes to the pipe; the loop keeps running after ``run_process``
    returns, until something stops it.
    """

    async_io: bool = False

    def __init__(self, container: Any = None) -> None:
        self.container = container

    @abstractmethod
    def run_process(self, process: WorkerProcess) -> None:
        """Body of the child process"""

    def io_event(self, process: WorkerProcess) -> None:
        """Called in the child when its pipe becomes readable.

        The reader is level-triggered: an override must consume what the
        master sent, or the loop keeps calling it. The default reads and
        discards the data, and stops watching the pipe once the master
        closes its end.
        """
        fileno = process.pipe.fileno()
        try:
            data = os.read(fileno, 65536)
        except BlockingIOError:
            return
        except OSError:
            data = b""

        if not data and process.loop is not None:
            process.loop.remove_reader(fileno)

    def reload(self, process: WorkerProcess) -> None:
        """Called in the child when the master forwards a reload (SIGUSR1)"""


class WorkerProcessHandle:
    """Supervisor-side bookkeeping for one spawned worker process.

    A handle spawns at most once. Respawning a worker means creating a new
    handle, which will carry a new pid.
    """

    def __init__(self, supervisor: Supervisor, worker_cls: Type[BaseWorker]) -> None:
        # Non-owning: the supervisor outlives all of its handles
        self.supervisor = supervisor
        self.worker_cls = worker_cls
        self.container = supervisor.container
        self.async_io = bool(getattr(worker_cls, "async_io", False))

        self.process: Optional[multiprocessing.process.BaseProcess] = None
        self.pipe: Optional[Connection] = None
        self.pid: Optional[int] = None
        self.fileno: Optional[int] = None
        self._exitcode: Optional[int] = None

    @property
    def name(self) -> str:
        prefix = self.supervisor.process_name or "keeper"
        return f"{prefix}: {self.worker_cls.__name__}"

    def __repr__(self) -> str:
        return f"<WorkerProcessHandle {fqn(self.worker_cls)} (PID {self.pid})>"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def spawn(self) -> int:
        """Start the child process and return its pid"""
        if self.process is not None:
            raise InvalidOperationError(f"{self!r} has already been spawned")

        # `fork` keeps the worker class, the container and the handle itself
        # available to the child without pickling them.
        ctx = multiprocessing.get_context("fork")
        parent_conn, child_conn = ctx.Pipe(duplex=True)

        self.process = ctx.Process(
            target=self._bootstrap,
            args=(child_conn, parent_conn),
            name=self.name,
        )
        try:
            self.process.start()
        except OSError:
            parent_conn.close()
            raise
        finally:
            child_conn.close()

        self.pipe = parent_conn
        self.fileno = parent_conn.fileno()
        self.pid = self.process.pid

        logger.debug(f"Spawned {fqn(self.worker_cls)} (PID {self.pid})")
        return self.pid

    def kill(self, signum: int = signal.SIGTERM) -> None:
        """Send ``signum`` to the child"""
        if self.pid is None:
            raise InvalidOperationError(f"{self!r} has not been spawned")

        os.kill(self.pid, signum)

    def stop(self) -> None:
        self.kill()

    @property
    def exitcode(self) -> Optional[int]:
        """Exit code of the child, reaping it if it has exited.

        None while the child runs. Negative values are the signal that
        killed the child.
        """
        if self.process is None:
            return None

        if self._exitcode is None:
            self._exitcode = self.process.exitcode

        return self._exitcode

    def is_alive(self) -> bool:
        return self.process is not None and self.exitcode is None

    def close(self) -> None:
        """Release the master end of the pipe and the reaped process"""
        if self.pipe is not None and not self.pipe.closed:
            self.pipe.close()

        if self.process is not None and self.exitcode is not None:
            self.process.close()

    # ------------------------------------------------------------------
    # Child side
    # ------------------------------------------------------------------

    def _bootstrap(self, child_conn: Connection, parent_conn: Connection) -> None:
        """Entry point of the child process"""
        parent_conn.close()
        self._close_inherited_descriptors()

        for signum in _MASTER_SIGNALS:
            signal.signal(
                signum,
                signal.default_int_handler
                if signum == signal.SIGINT
                else signal.SIG_DFL,
            )
        signal.set_wakeup_fd(-1)

        try:
            drop_privileges(
                uid=self.supervisor.user_id, gid=self.supervisor.group_id
            )
        except PrivilegeDropFailure as exc:
            logger.error(f"{fqn(self.worker_cls)} (PID {os.getpid()}) aborted: {exc}")
            raise

        worker = self.worker_cls(self.container)

        loop = None
        if self.async_io:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)

        process = WorkerProcess(self.name, child_conn, self.container, loop)

        if loop is not None:
            loop.add_reader(child_conn.fileno(), worker.io_event, process)
            loop.add_signal_handler(signal.SIGUSR1, worker.reload, process)
        else:
            signal.signal(
                signal.SIGUSR1, lambda signum, frame: worker.reload(process)
            )

        try:
            worker.run_process(process)

            if loop is not None and not loop.is_closed():
                loop.run_forever()
        finally:
            if loop is not None and not loop.is_closed():
                loop.close()
            child_conn.close()

    def _close_inherited_descriptors(self) -> None:
        """Close the master's descriptors copied in by ``fork``.

        The PID file is closed without unlocking it, so the lock stays with
        the master and goes away with it.
        """
        guard = getattr(self.supervisor, "guard", None)
        if guard is not None and guard.fd is not None:
            os.close(guard.fd)

        registry = getattr(self.supervisor, "registry", None)
        if registry is None:
            return

        for sibling in registry.handles():
            if sibling is not self and sibling.pipe is not None:
                sibling.pipe.close()
